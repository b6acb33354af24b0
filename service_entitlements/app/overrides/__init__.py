"""
Administrator overrides and maintenance presets.
"""
