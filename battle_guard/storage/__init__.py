"""
SQLite persistence for personas, the cost ledger, battles and control flags.
"""
