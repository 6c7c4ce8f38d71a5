"""
Command-line interface for Battle Guard.
"""
