from __future__ import annotations

from inboxrag.services.container import Container, get_container


def get_app_container() -> Container:
    # Route dependency so tests can swap the wired graph with app.dependency_overrides.
    return get_container()
