"""
Loader — read matrix definition files and convert them to core types.

Accepted formats: YAML (``.yml`` / ``.yaml``) and JSON (anything else).
"""
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Tuple, Union

import yaml
from pydantic import ValidationError

from wheel_matrix.core.axes import AxisSet, Override
from wheel_matrix.core.errors import MatrixDefinitionError
from wheel_matrix.io.schema import MatrixDefinition

logger = logging.getLogger(__name__)


def parse_definition(data: Dict[str, Any]) -> MatrixDefinition:
    """Validate a raw mapping into a MatrixDefinition."""
    if not isinstance(data, dict):
        raise MatrixDefinitionError("matrix definition must be a mapping")
    try:
        return MatrixDefinition.model_validate(data)
    except ValidationError as e:
        raise MatrixDefinitionError(f"invalid matrix definition: {e}") from e


def load_definition(path: Union[str, Path]) -> MatrixDefinition:
    path = Path(path)
    if not path.exists():
        raise MatrixDefinitionError(f"definition not found: {path}")
    text = path.read_text()
    try:
        if path.suffix.lower() in (".yml", ".yaml"):
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise MatrixDefinitionError(f"cannot parse {path}: {e}") from e
    definition = parse_definition(data)
    logger.info(f"Loaded matrix definition '{definition.name}' from {path}")
    return definition


def definition_matrix(
    definition: MatrixDefinition,
) -> Tuple[AxisSet, List[Override], List[Override]]:
    """Return (axes, includes, excludes) for the expander."""
    axes = AxisSet.from_mapping(definition.axes)
    includes = [Override(values=item) for item in definition.include]
    excludes = [Override(values=item) for item in definition.exclude]
    return axes, includes, excludes
