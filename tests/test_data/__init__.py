"""
Data generation tests for the Adaptive Syntax Filter.

Tests for Phase 2 components:
- Synthetic data generation
- Constraint systems
- Temporal evolution models
- Dataset validation
""" 
