"""Settings for image builds."""
