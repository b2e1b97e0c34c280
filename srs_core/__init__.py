"""
srs_core - memory scheduling core for a spaced-repetition app.

Subpackages:
- fsrs: memory models, review state machine, persistence
- policies: feature flags, short loop, adaptive retention
- analytics: recall calibration metrics
"""
