"""
plannersync -- Git-hosted sync for personal planner data.

Tasks, habits, bookmarks and calendar events live locally. A GitHub or
Gitee repository doubles as a remote JSON blob store, one file per module.

Best-effort, last writer wins per module.
"""

import os

__version__ = "0.1.0"

SYNC_HOME = os.environ.get("PLANNERSYNC_HOME", "~/.plannersync")
