"""
Body catalogs, the position oracle contract, the SPICE oracle and the worker pool.
"""
