"""Backend package: models, stores, pipelines, APIs.

This package accepts alumni memory submissions, tags them by theme, stores
their media, and serves the admin review and export surface.
"""
