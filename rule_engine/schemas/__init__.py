"""
Pydantic schemas for request validation and response bodies.
"""
