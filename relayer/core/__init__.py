"""
Configuration, logging, exceptions and shared types.
"""
