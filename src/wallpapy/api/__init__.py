"""Wallpapy FastAPI REST API layer.

This package contains the FastAPI application and the Pydantic request
models of the serving layer.

Modules
-------
main
    FastAPI application factory, route handlers and the ``main()`` CLI
    entry point.
models
    Pydantic models for API request validation.
listing
    Artifact serialisation and pagination helpers.
"""
