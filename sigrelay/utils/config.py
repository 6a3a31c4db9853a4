"""Read and write TOML configuration files as pydantic models."""
from __future__ import annotations

import pathlib
import sys
from typing import TypeVar

import tomli_w
from pydantic import BaseModel

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    import tomllib
else:  # pragma: <3.11 cover
    import tomli as tomllib

BaseModelT = TypeVar('BaseModelT', bound=BaseModel)


def dumps(model: BaseModel, *, exclude_none: bool = True) -> str:
    """Serialize a configuration model to a TOML formatted string.

    Args:
        model: Config model instance to serialize.
        exclude_none: Skip attributes which are `None` because TOML has
            no null value.

    Returns:
        TOML string of the model.
    """
    return tomli_w.dumps(model.model_dump(exclude_none=exclude_none))


def loads(model: type[BaseModelT], data: str) -> BaseModelT:
    """Parse a TOML string into a configuration model.

    Args:
        model: Config model type to validate the parsed TOML with.
        data: TOML string to parse.

    Returns:
        Model initialized from the TOML data.
    """
    return model.model_validate(tomllib.loads(data))


def load_file(
    model: type[BaseModelT],
    filepath: str | pathlib.Path,
) -> BaseModelT:
    """Parse a TOML file into a configuration model."""
    with open(filepath, 'rb') as f:
        return loads(model, f.read().decode())


def write_file(
    model: BaseModel,
    filepath: str | pathlib.Path,
) -> None:
    """Write a configuration model to a TOML file."""
    with open(filepath, 'w') as f:
        f.write(dumps(model))
