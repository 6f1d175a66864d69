"""Asynchronous notification dispatch core for the project tracker.

Feature modules record delivery intents through
:func:`project_notifications.application.use_cases.notifications.publish_notification`;
background workers turn them into recipient-visible notifications.
"""
