"""Database models and async engine setup."""
