"""Process-wide access to the SQL toolkit.

Consumers call :func:`get_sql_toolkit`; they never import a backend
directly.  The backend is built lazily on first use, under a lock, so the
validator can be constructed from any thread.
"""

from __future__ import annotations

import threading
from typing import Callable

from ._protocols import SqlToolkit

ToolkitFactory = Callable[[], SqlToolkit]


def _sqlglot_factory() -> SqlToolkit:
    from .impl.sqlglot_impl import SqlGlotToolkit

    return SqlGlotToolkit()


_lock = threading.Lock()
_factory: ToolkitFactory = _sqlglot_factory
_instance: SqlToolkit | None = None


def register_implementation(factory_fn: ToolkitFactory | None) -> None:
    """Use *factory_fn* to build the toolkit from now on.

    ``None`` restores the sqlglot backend.  Any toolkit built earlier is
    discarded, so the next :func:`get_sql_toolkit` call uses the new factory.
    """
    global _factory, _instance  # noqa: PLW0603
    with _lock:
        _factory = factory_fn or _sqlglot_factory
        _instance = None


def get_sql_toolkit() -> SqlToolkit:
    global _instance  # noqa: PLW0603
    toolkit = _instance
    if toolkit is None:
        with _lock:
            if _instance is None:
                _instance = _factory()
            toolkit = _instance
    return toolkit


def reset_toolkit() -> None:
    """Back to the default backend with no cached instance.  Tests only."""
    register_implementation(None)
