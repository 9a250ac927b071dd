"""Node handlers package.

Handlers share the signature `async (fields, context, **deps) -> output`, with
collaborators bound by services.execution.registry.build_default_registry:
- input.py: Input, Input Validation, Delay, Response
- database.py: dbFind, dbInsert, dbUpdate, dbDelete (DocumentStore)
- auth.py: authMiddleware, jwtGenerate (TokenSigner)
- email.py: emailSend (Mailer)
"""

# Input / control handlers
from .input import (
    handle_input,
    handle_input_validation,
    handle_delay,
    handle_response,
)

# Database handlers
from .database import (
    handle_db_find,
    handle_db_insert,
    handle_db_update,
    handle_db_delete,
)

# Auth handlers
from .auth import (
    handle_auth_middleware,
    handle_jwt_generate,
)

# Mail handlers
from .email import (
    handle_email_send,
)

__all__ = [
    # Input / control
    'handle_input',
    'handle_input_validation',
    'handle_delay',
    'handle_response',
    # Database
    'handle_db_find',
    'handle_db_insert',
    'handle_db_update',
    'handle_db_delete',
    # Auth
    'handle_auth_middleware',
    'handle_jwt_generate',
    # Mail
    'handle_email_send',
]
