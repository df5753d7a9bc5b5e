"""Release orchestrator shared models, protocols, constants, and utilities.

This package is the foundational layer for ``release_orchestrator``,
``quality_gate`` and ``deploy_gateway``.
"""

__version__ = "1.0.0"
