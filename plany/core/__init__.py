"""
core — Constants, errors, configuration, logging, clocks and the FSM.

Everything here is dependency-free with respect to the rest of the package;
the store, orchestrator and pipeline all build on it.
"""
