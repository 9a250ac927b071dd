"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database, DocumentStore, WorkflowRepository
from services.broadcaster import ExecutionBroadcaster
from services.execution import ExecutionInterpreter, build_default_registry
from services.graph import MutationEngine
from services.mailer import Mailer
from services.proposals import LLMProposalSource
from services.tokens import TokenSigner
from services.workflow import WorkflowService


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Persistence
    database = providers.Singleton(
        Database,
        settings=settings
    )

    workflow_repository = providers.Singleton(
        WorkflowRepository,
        database=database
    )

    document_store = providers.Singleton(
        DocumentStore,
        database=database
    )

    # Handler collaborators
    mailer = providers.Singleton(
        Mailer.from_settings,
        settings=settings
    )

    token_signer = providers.Singleton(
        TokenSigner.from_settings,
        settings=settings
    )

    proposal_source = providers.Singleton(
        LLMProposalSource.from_settings,
        settings=settings
    )

    # Execution log sink (startup/shutdown owned by the app lifespan)
    broadcaster = providers.Singleton(
        ExecutionBroadcaster,
        queue_size=settings.provided.log_sink_queue_size,
        buffer_size=settings.provided.log_buffer_size
    )

    # Engine
    handler_registry = providers.Singleton(
        build_default_registry,
        store=document_store,
        mailer=mailer,
        signer=token_signer,
        settings=settings
    )

    interpreter = providers.Singleton(
        ExecutionInterpreter,
        registry=handler_registry,
        log_sink=broadcaster,
        skip_input=settings.provided.execution_skip_input_steps
    )

    mutation_engine = providers.Singleton(
        MutationEngine
    )

    workflow_service = providers.Singleton(
        WorkflowService,
        repository=workflow_repository,
        proposal_source=proposal_source,
        interpreter=interpreter,
        mutation_engine=mutation_engine
    )


# Global container instance
container = Container()
