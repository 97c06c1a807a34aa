"""patchfeed testing utilities.

Modules:
    fixtures: Pytest fixtures (signing_key, trust_context, update_server,
              install_dir) and the serve_feed() context manager.
    mocks: StaticUpdateServer, an httpx.MockTransport-backed feed server
           with request recording and status overrides.
    assertions: Tree comparison and SyncResult assertions.

Example:
    >>> from patchfeed.testing import StaticUpdateServer, assert_trees_equal
    >>> pytest_plugins = ["patchfeed.testing.fixtures"]
"""

from patchfeed.testing.assertions import (
    assert_sync_cancelled,
    assert_sync_succeeded,
    assert_trees_equal,
    tree_contents,
)
from patchfeed.testing.mocks import DEFAULT_TEST_BASE_URI, StaticUpdateServer

__all__ = [
    "DEFAULT_TEST_BASE_URI",
    "StaticUpdateServer",
    "assert_sync_cancelled",
    "assert_sync_succeeded",
    "assert_trees_equal",
    "tree_contents",
]
