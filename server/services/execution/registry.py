"""Tool handler registry - node type to handler dispatch table.

The registry holds no business logic. Handlers are `async (fields, context) -> output`;
collaborators (document store, mailer, token signer, settings) are bound with
functools.partial when the default registry is built, so a deployment can swap
any of them without touching the interpreter.
"""

from functools import partial
from typing import Dict, Any, Awaitable, Callable, List, Optional, TYPE_CHECKING

from core.logging import get_logger
from constants import NodeType
from services.errors import UnknownNodeTypeError

if TYPE_CHECKING:
    from core.config import Settings
    from core.database import DocumentStore
    from services.execution.models import ExecutionContext
    from services.mailer import Mailer
    from services.tokens import TokenSigner

logger = get_logger(__name__)

Handler = Callable[[Dict[str, Any], "ExecutionContext"], Awaitable[Any]]


class ToolHandlerRegistry:
    """Maps node type strings to handler callables."""

    def __init__(self, handlers: Optional[Dict[str, Handler]] = None):
        self._handlers: Dict[str, Handler] = dict(handlers or {})

    def register(self, node_type: str, handler: Handler) -> None:
        if node_type in self._handlers:
            logger.debug("Replacing handler", node_type=node_type)
        self._handlers[node_type] = handler

    def unregister(self, node_type: str) -> None:
        self._handlers.pop(node_type, None)

    def has(self, node_type: str) -> bool:
        return node_type in self._handlers

    def get(self, node_type: str) -> Handler:
        """Get the handler for a node type.

        Raises:
            UnknownNodeTypeError: When nothing is registered for the type.
        """
        handler = self._handlers.get(node_type)
        if handler is None:
            raise UnknownNodeTypeError(node_type)
        return handler

    def types(self) -> List[str]:
        return list(self._handlers)

    def __contains__(self, node_type: str) -> bool:
        return self.has(node_type)

    def __len__(self) -> int:
        return len(self._handlers)


def build_default_registry(store: "DocumentStore", mailer: "Mailer",
                           signer: "TokenSigner", settings: "Settings") -> ToolHandlerRegistry:
    """Build the registry with collaborators bound via partial."""
    # Handlers import services.execution.models, so they load after this package
    from services.handlers import (
        handle_input, handle_input_validation, handle_delay, handle_response,
        handle_db_find, handle_db_insert, handle_db_update, handle_db_delete,
        handle_auth_middleware, handle_jwt_generate,
        handle_email_send,
    )

    return ToolHandlerRegistry({
        # Input / control
        NodeType.INPUT.value: handle_input,
        NodeType.INPUT_VALIDATION.value: handle_input_validation,
        NodeType.DELAY.value: partial(handle_delay, max_seconds=settings.execution_max_delay_seconds),
        NodeType.RESPONSE.value: handle_response,
        # Database
        NodeType.DB_FIND.value: partial(handle_db_find, store=store),
        NodeType.DB_INSERT.value: partial(handle_db_insert, store=store),
        NodeType.DB_UPDATE.value: partial(handle_db_update, store=store),
        NodeType.DB_DELETE.value: partial(handle_db_delete, store=store),
        # Auth
        NodeType.AUTH_MIDDLEWARE.value: partial(handle_auth_middleware, signer=signer),
        NodeType.JWT_GENERATE.value: partial(handle_jwt_generate, signer=signer),
        # Mail
        NodeType.EMAIL_SEND.value: partial(handle_email_send, mailer=mailer),
    })
