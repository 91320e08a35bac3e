"""Route modules for the backend application."""

__all__ = [
    "conflicts",
    "group_bookings",
    "magic_links",
    "webhooks",
]
