"""Pipelines for submission intake, admin review, exports and admin management.

Each service takes its stores and authorizer as constructor arguments so the
API layer and the tests can wire them independently.
"""
