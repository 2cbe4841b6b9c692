"""
Order Hub - order-intake case lifecycle engine.
"""

__version__ = "1.0.0"
