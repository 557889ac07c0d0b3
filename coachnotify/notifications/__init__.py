"""Notification engine, delivery queue, scheduler, and real-time fan-out."""
