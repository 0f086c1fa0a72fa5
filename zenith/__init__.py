"""
Zenith kernel: compact, quantized snapshots of planetary longitudes.

Builds kernels from a position oracle, stores them in a versioned binary
layout, and reconstructs and verifies positions against the oracle.
"""

__version__ = "1.0.0"
