"""Operator engine for stack-based infrastructure orchestration.

Builds the resource graph of a stack, reconciles it against recorded state
and executes the resulting plan wave by wave through provider plugins.

Package name uses 'stack_opr' (short for operator) to avoid collision
with Python's stdlib 'operator' module.
"""
