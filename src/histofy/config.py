"""Engine configuration loaded from the repository's .histofy directory."""

import json
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ValidationError as PydanticValidationError

from histofy.core.errors import ValidationError
from histofy.models.conflict import ResolutionPolicy

CONFIG_DIR_NAME = ".histofy"
CONFIG_FILE_NAME = "config.json"


class EngineConfig(BaseModel):
    """Tunable settings for planning and executing migrations."""

    bulk_threshold: int = 20  # More linear commits than this use bulk rewrite
    precision_threshold: int = 5  # This many or fewer use sequential amend
    backup_prefix: str = "migration-backup"
    work_prefix: str = "migration-work"
    default_resolution_policy: ResolutionPolicy = ResolutionPolicy.ABORT
    migration_timeout: Optional[float] = None
    require_clean_worktree: bool = True

    @classmethod
    def config_path(cls, project_root: Path) -> Path:
        return Path(project_root) / CONFIG_DIR_NAME / CONFIG_FILE_NAME

    @classmethod
    def load(cls, project_root: Path) -> "EngineConfig":
        """Load config from <project_root>/.histofy/config.json, or defaults."""
        path = cls.config_path(project_root)
        if not path.exists():
            return cls()

        try:
            data = json.loads(path.read_text())
            return cls(**data)
        except json.JSONDecodeError as e:
            raise ValidationError(
                f"Invalid JSON in {path}: {e}", field="config"
            ) from e
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid configuration in {path}: {e}", field="config"
            ) from e

    def save(self, project_root: Path) -> Path:
        path = self.config_path(project_root)
        path.parent.mkdir(exist_ok=True)
        path.write_text(json.dumps(self.model_dump(mode="json"), indent=2))
        return path
