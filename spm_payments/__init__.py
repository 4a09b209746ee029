"""SPM Payments -- tip payment pipeline for the Street Performers Map."""

__version__ = "0.1.0"
