"""Follow-up reminder service module (API, dispatcher, Celery worker, stats).

Reminders are scheduled against an opaque entity (a completed client project),
dispatched by a periodic scan, and moved through a compare-and-swap guarded
lifecycle: pending -> sent -> completed / missed, or cancelled.
"""
