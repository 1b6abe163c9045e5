"""
Booking Engine
==============

Booking lifecycle, fee calculation and the scheduled auto-cancel and
fund-release sweeps for the shortlet and real-estate marketplace.
"""

__version__ = "1.0.0"
