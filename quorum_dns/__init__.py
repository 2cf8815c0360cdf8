"""
Quorum-DNS: multi-writer DNS reconciliation.
"""

__version__ = "0.1.0"
