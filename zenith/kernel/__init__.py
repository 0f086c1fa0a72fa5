"""
Kernel codec, binary format, storage, construction, search and verification.
"""
