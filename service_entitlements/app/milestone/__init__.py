"""
Community milestone tracking.
"""
