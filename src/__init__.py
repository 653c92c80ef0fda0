"""Top-level package for the point-of-sale ordering application.

This package exposes the order engine via :mod:`app`, the data access
layer via :mod:`dao` and the interactive front end in :mod:`cli`.
"""
