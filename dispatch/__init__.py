"""
                Restaurant Delivery Dispatch

Delivery assignment and auto-routing engine for multi-branch restaurant
operations: groups ready orders into trips, picks available couriers and
tracks each trip from dispatch to delivery.
"""

__version__ = "1.0.0"
