"""CalendarSync - iCalendar feed reconciliation and recurring event expansion."""

__version__ = "1.0.0"
__author__ = "CalendarSync Team"
__email__ = "support@calendarsync.local"
__description__ = "iCalendar import/export, feed subscriptions and recurrence expansion"

# Package metadata
__all__ = [
    "__author__",
    "__description__",
    "__email__",
    "__version__",
]
