"""Game lending for a community of board game owners.

Borrow requests, approval into lending records and the loan lifecycle.
"""

__version__ = "0.1.0"
