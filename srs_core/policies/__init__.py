"""
Scheduling policies layered on top of the memory models.
"""
