"""
Configuration package façade.

* :func:`load_config` – locate, parse and validate *curate.yaml*.
* :class:`ConfigSchema` – the validated Pydantic model.
"""

from .loader import load_config  # noqa: F401
from .schema import ConfigSchema  # noqa: F401

__all__: list[str] = ["load_config", "ConfigSchema"]
