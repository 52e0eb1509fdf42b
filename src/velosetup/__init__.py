"""velosetup - Velociraptor deployment orchestration and tool registry."""

__version__ = "0.1.0"
