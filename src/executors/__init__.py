"""Executor backends.

An executor turns a fully assembled prompt into a result. Each backend is one
class; the run manager only ever sees the `Executor` interface.
"""
