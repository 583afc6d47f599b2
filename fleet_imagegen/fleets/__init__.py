"""Fleet and device management."""
