"""Pydantic schemas for API payloads and pipeline messages."""
