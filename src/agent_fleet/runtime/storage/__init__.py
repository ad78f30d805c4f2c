from .bootstrap import ensure_state_root
from .file_repos import FileConfigRepository, FileTaskSource

__all__ = ["FileConfigRepository", "FileTaskSource", "ensure_state_root"]
