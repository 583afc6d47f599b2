"""Fleet Image Generator - build-and-release control plane for device fleets.

This package builds system images from declarative device profiles using an
external image-building toolchain, publishes the resulting artifacts, and
rolls releases out to fleets of devices that poll for updates over HTTP.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
