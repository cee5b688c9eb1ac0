"""Application package for the DutyHub project/duty management backend.

This package exposes the result envelope, repository, rule and service
modules used by the rest of the system. It is intentionally lightweight;
individual modules contain the concrete implementations and documentation.
"""
