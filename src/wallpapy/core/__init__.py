"""Core functionality for wallpaper generation.

This package holds everything a generation run touches, independent of how
runs are triggered or results are served:

- **config**: Environment-based settings (``WALLPAPY_`` prefix) and the style profile
- **models**: Artifacts, comments, feedback summaries and generation runs
- **catalog** / **storage**: SQLite catalog and the image file store
- **summarizer**: Bounded digest of ratings and comments for the next prompt
- **prompt_generator** / **image_generator**: Clients for the external models
- **finalizer**: Encoding, thumbnails and placeholders
- **orchestrator** / **scheduler**: Run state machine and timed triggers

Usage Example
-------------
    from wallpapy.core.catalog import CatalogStore
    from wallpapy.core.orchestrator import GenerationOrchestrator

    orchestrator = GenerationOrchestrator(catalog, prompt_client, image_client,
                                          finalizer, config.style_profile)
    run = orchestrator.run_generation_cycle()
    print(run.status, run.artifact_id)
"""
