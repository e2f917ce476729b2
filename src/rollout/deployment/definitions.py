"""Rollout definitions stored as YAML/JSON files."""
from pathlib import Path
from typing import Dict, List, Union

import yaml
from loguru import logger
from pydantic import ValidationError

from src.rollout.models.schemas import RolloutSpec

DEFINITION_SUFFIXES = (".yaml", ".yml", ".json")


def parse_definitions(text: str, source: str = "<string>") -> List[RolloutSpec]:
    """Parse every document of a (multi-document) YAML or JSON string.

    Documents that do not describe a valid rollout are logged and skipped.
    """
    specs: List[RolloutSpec] = []
    for index, document in enumerate(yaml.safe_load_all(text)):
        if document is None:
            continue
        # Accept both bare definitions and {"spec": {...}} wrappers
        if isinstance(document, dict) and isinstance(document.get("spec"), dict) and "name" not in document:
            document = {**document["spec"], **document.get("metadata", {})}
        try:
            specs.append(RolloutSpec.model_validate(document))
        except ValidationError as e:
            logger.error(f"Skipping invalid rollout definition {source}#{index}: {e}")
    return specs


def _definition_files(root: Path) -> List[Path]:
    if root.is_file():
        return [root]
    return sorted(p for p in root.iterdir() if p.suffix in DEFINITION_SUFFIXES)


def _read_file(file: Path) -> List[RolloutSpec]:
    try:
        text = file.read_text(encoding="utf-8")
        return parse_definitions(text, source=str(file))
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Could not read rollout definitions from {file}: {e}")
        return []


def dump_definition(spec: RolloutSpec) -> dict:
    return spec.model_dump(mode="json", by_alias=True, exclude_none=True)


class DefinitionStore:
    """Rollout definitions kept as YAML files in one directory.

    Definitions applied through the API are written here so they are
    registered again after a restart; hand-written files in the same
    directory are loaded alongside them.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self._sources: Dict[str, Path] = {}

    def path_for(self, spec: RolloutSpec) -> Path:
        return self.root / f"{spec.namespace}.{spec.name}.yaml"

    def load(self) -> List[RolloutSpec]:
        if not self.root.exists():
            logger.warning(f"Rollout definitions path {self.root} does not exist")
            return []

        by_key: Dict[str, RolloutSpec] = {}
        for file in _definition_files(self.root):
            for spec in _read_file(file):
                by_key[spec.key] = spec
                self._sources[spec.key] = file

        logger.info(f"Loaded {len(by_key)} rollout definitions from {self.root}")
        return list(by_key.values())

    def save(self, spec: RolloutSpec) -> Path:
        """Write ``spec`` to its own file, replacing any earlier copy.

        Raises:
            OSError: If the file cannot be written
        """
        path = self.path_for(spec)
        source = self._sources.get(spec.key)
        if source is not None and source != path:
            self._remove_from(source, spec.key)

        self.root.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(yaml.safe_dump(dump_definition(spec), sort_keys=False), encoding="utf-8")
        tmp.replace(path)

        self._sources[spec.key] = path
        logger.debug(f"Rollout {spec.key} saved to {path}")
        return path

    def delete(self, namespace: str, name: str) -> None:
        """Remove a definition from whichever file holds it.

        Raises:
            OSError: If the file cannot be rewritten or removed
        """
        key = f"{namespace}/{name}"
        source = self._sources.pop(key, None) or self.root / f"{namespace}.{name}.yaml"
        if source.exists():
            self._remove_from(source, key)

    def _remove_from(self, file: Path, key: str) -> None:
        remaining = [spec for spec in _read_file(file) if spec.key != key]
        if remaining:
            file.write_text(
                yaml.safe_dump_all([dump_definition(s) for s in remaining], sort_keys=False),
                encoding="utf-8",
            )
        else:
            file.unlink(missing_ok=True)
        logger.debug(f"Rollout {key} removed from {file}")


def load_definitions(path: Union[str, Path]) -> List[RolloutSpec]:
    """Load all rollout definitions found directly under ``path``.

    Args:
        path: A directory of definition files, or a single file

    Returns:
        Valid definitions; duplicates keep the last one read
    """
    return DefinitionStore(path).load()
