"""
Usage quotas for metered features.
"""
