"""Stage prompt catalog.

Every prompt the pipeline sends to the coding agent lives in
``templates.yaml`` next to this module and is served by
:class:`PromptCatalog`.
"""

from drydock.prompts.catalog import PromptCatalog, get_catalog

__all__ = ["PromptCatalog", "get_catalog"]
