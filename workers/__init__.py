"""
Scenario worker programs.

Each module is run as ``python -m workers.<name>`` by the crash harness.
"""
