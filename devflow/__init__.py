"""devflow: declarative workflows for local development and test environments."""

__version__ = "0.1.0"
