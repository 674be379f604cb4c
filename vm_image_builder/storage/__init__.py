"""Block device, partition, filesystem and mount handling."""
