"""Buildtrail terminal output.

Modules
-------
renderer
    ``Renderer`` turns scan reports, statuses, timelines and action log
    entries into Rich renderables.
"""
