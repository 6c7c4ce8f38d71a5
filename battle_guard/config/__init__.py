"""
Configuration loading for Battle Guard.
"""
