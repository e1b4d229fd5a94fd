"""Pydantic models for hub payloads and processing-engine messages."""
