"""Building blocks and text reports for inspecting containerd containers, images, pods and mounts."""

__version__ = "0.1.0"