"""
Domain models and errors shared across the package.
"""
