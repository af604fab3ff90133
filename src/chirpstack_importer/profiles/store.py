"""YAML-backed store of import profiles.

File layout:

```yaml
profiles:
  - id: 3f2c...
    name: Water meters
    requiredTags: [floor, site]
```

The file is read on every call and rewritten whole on every change; profiles
are few and edited by hand as often as through the CLI.
"""

from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError as PydanticValidationError

from ..models.profiles import ImportProfile
from ..utils.exceptions import ConfigurationError, ProfileNotFoundError

logger = structlog.get_logger(__name__)


class ImportProfileStore:
    """
    Read and write import profiles in a YAML file.

    Usage:
        store = ImportProfileStore(Path("import_profiles.yaml"))
        profile = store.save(ImportProfile(name="Water meters", required_tags={"site"}))
        store.get(profile.id)
    """

    def __init__(self, path: str | Path) -> None:
        """
        Initialize store.

        Args:
            path: YAML file holding the profiles (created on first save)
        """
        self.path = Path(path)

    def _load(self) -> dict[str, ImportProfile]:
        if not self.path.exists():
            return {}

        try:
            with open(self.path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in profile store {self.path}: {e}") from e

        entries = data.get("profiles", []) if isinstance(data, dict) else None
        if not isinstance(entries, list):
            raise ConfigurationError(
                f"Invalid profile store structure in {self.path}: expected a 'profiles' list"
            )

        profiles: dict[str, ImportProfile] = {}
        for entry in entries:
            try:
                profile = ImportProfile.model_validate(entry)
            except PydanticValidationError as e:
                raise ConfigurationError(f"Invalid profile in {self.path}: {e}") from e
            profiles[profile.id] = profile
        return profiles

    def _dump(self, profiles: dict[str, ImportProfile]) -> None:
        data: dict[str, Any] = {
            "profiles": [
                {
                    "id": p.id,
                    "name": p.name,
                    "requiredTags": sorted(p.required_tags),
                }
                for p in profiles.values()
            ]
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

    def get(self, profile_id: str) -> ImportProfile:
        """
        Get a profile by id.

        Raises:
            ProfileNotFoundError: If no profile has this id
        """
        profile = self._load().get(profile_id)
        if profile is None:
            raise ProfileNotFoundError(profile_id)
        return profile

    def list(self) -> list[ImportProfile]:
        """All profiles, sorted by name."""
        return sorted(self._load().values(), key=lambda p: p.name.lower())

    def save(self, profile: ImportProfile) -> ImportProfile:
        """
        Create or update a profile.

        Args:
            profile: Profile to store (matched by id)

        Returns:
            The stored profile
        """
        profiles = self._load()
        created = profile.id not in profiles
        profiles[profile.id] = profile
        self._dump(profiles)
        logger.info(
            "Import profile saved",
            profile_id=profile.id,
            name=profile.name,
            created=created,
        )
        return profile

    def delete(self, profile_id: str) -> None:
        """
        Delete a profile.

        Raises:
            ProfileNotFoundError: If no profile has this id
        """
        profiles = self._load()
        if profiles.pop(profile_id, None) is None:
            raise ProfileNotFoundError(profile_id)
        self._dump(profiles)
        logger.info("Import profile deleted", profile_id=profile_id)
