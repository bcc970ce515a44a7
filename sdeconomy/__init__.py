"""
Supply/Demand Economy

Dynamic pricing for tradeable items: prices follow the ratio of demand to
supply, every action is written to a ledger, and idle demand decays.
"""

__version__ = "1.0.0"
