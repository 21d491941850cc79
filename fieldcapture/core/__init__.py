"""
Core business logic for delegated uploads.

This package is framework-agnostic - it doesn't import FastAPI, boto3,
Snowflake, or any infrastructure concerns. Storage and persistence are
reached through small protocols so the upload rules can be tested in
isolation.
"""
