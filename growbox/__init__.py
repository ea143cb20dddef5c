"""growbox - rule-driven actuator control for indoor grow rooms."""

__version__ = "0.1.0"
