"""
Integration catalog and credential registry.
"""
