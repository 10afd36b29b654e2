"""
Wafflecord weekly notifier

Keeps a durable registry of subscribed channels and posts the weekly
"Waffle Time!" notification to each of them on a fixed weekly schedule.
"""

__version__ = "0.1.0"
