"""Create or update an ECS stack, publish its image and wait for the service to settle."""

__version__ = "0.1.0"
