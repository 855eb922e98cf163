"""BPM Workflow Engine
Blueprint registry.
"""
