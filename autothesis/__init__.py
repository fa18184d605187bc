"""Configuration, cancellation and storage for iterative equity-research theses."""

__version__ = "0.1.0"