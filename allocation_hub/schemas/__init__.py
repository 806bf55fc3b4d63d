"""Pydantic schemas for API payloads and derived results."""
