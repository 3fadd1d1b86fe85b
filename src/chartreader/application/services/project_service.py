from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from chartreader.core.config import AppPaths
from chartreader.core.errors import ProjectNotInitializedError
from chartreader.core.files import ensure_directory
from chartreader.infrastructure.db.sqlite import initialize_schema


@dataclass(slots=True)
class InitResult:
    paths_created: list[Path]
    db_path: Path


class ProjectService:
    def __init__(self, paths: AppPaths) -> None:
        self.paths = paths

    def init_project(self) -> InitResult:
        paths_created: list[Path] = []

        for path in (
            self.paths.files_dir,
            self.paths.new_dir,
            self.paths.completed_dir,
            self.paths.previews_dir,
            self.paths.state_dir,
        ):
            if not path.exists():
                paths_created.append(path)
            ensure_directory(path)

        initialize_schema(self.paths.db_path)

        return InitResult(paths_created=paths_created, db_path=self.paths.db_path)

    def is_initialized(self) -> bool:
        return self.paths.db_path.exists()

    def require_initialized(self) -> None:
        if not self.is_initialized():
            raise ProjectNotInitializedError(
                f"Project is not initialized. Run 'chartreader init' first in {self.paths.project_root}"
            )
        # Pick up columns added since the database was created.
        initialize_schema(self.paths.db_path)
