"""Pydantic schemas for the GAR service."""
