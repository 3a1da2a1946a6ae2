"""Two-phase payment settlement for ride seat bookings."""

__version__ = "1.0.0"
