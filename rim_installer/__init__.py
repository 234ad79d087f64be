"""Rust toolkit installer and manager (manifest-driven).

Core design goals:
- Manifest-driven: one TOML manifest describes the toolchain plus extra tools
- Idempotent installs backed by an on-disk installation record
- Offline-first packaging (vendoring) with checksummed artifacts
- Self-updating manager binary
- Centralized logging
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
