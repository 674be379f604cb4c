"""Collaborators that run inside or against the target root filesystem."""
