"""
Live search over the packages and configuration options of several
independently versioned channels.
"""
