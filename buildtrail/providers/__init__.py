"""CI provider adapters.

Modules
-------
base
    ``CIProvider``: the protocol the core consumes.
gitlab
    ``GitLabProvider``: GitLab REST API v4 over httpx.
"""

from buildtrail.providers.base import CIProvider
from buildtrail.providers.gitlab import GitLabProvider, ProjectSummary

__all__ = ["CIProvider", "GitLabProvider", "ProjectSummary"]
