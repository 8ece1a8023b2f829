"""Document photo rectification: page corner detection and perspective flattening."""

__version__ = "0.1.0"
