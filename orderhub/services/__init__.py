"""
Order Hub - Services Package
"""
