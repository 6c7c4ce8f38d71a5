"""
Core modules for Battle Guard.

This package contains the battle loop: cost accounting, budget governance,
battle orchestration, referee grading and batch scheduling.
"""
