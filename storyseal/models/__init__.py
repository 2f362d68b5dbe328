"""
Pydantic models for pipeline data and API responses.
"""
