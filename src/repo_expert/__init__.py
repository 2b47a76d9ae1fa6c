"""repo-expert — keep a remote passage memory of a repository in sync.

The watch daemon polls git HEAD and listens for filesystem events, the sync
executor uploads chunked file content to the remote passage store, and the
state store records which passages belong to which file.
"""

__version__ = "0.3.0"
