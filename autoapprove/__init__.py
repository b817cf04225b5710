"""
autoapprove - decides whether a pull request is trivial enough to auto-approve.
"""

__version__ = "0.4.0"
