"""Action type handlers, one per ActionType."""

from src.pipeline.actions.handlers.add_contact import AddContactHandler
from src.pipeline.actions.handlers.base import ActionHandler, HandlerDependencies
from src.pipeline.actions.handlers.call import CallHandler
from src.pipeline.actions.handlers.email import EmailHandler
from src.pipeline.actions.handlers.linkedin import LinkedInMessageHandler
from src.pipeline.actions.handlers.lookup import LookupHandler
from src.pipeline.actions.handlers.meeting import MeetingHandler
from src.pipeline.actions.handlers.no_action import NoActionHandler
from src.pipeline.actions.handlers.pipeline_stage import UpdatePipelineStageHandler
from src.pipeline.actions.handlers.task import TaskHandler

DEFAULT_HANDLERS: tuple[type[ActionHandler], ...] = (
    EmailHandler,
    TaskHandler,
    MeetingHandler,
    CallHandler,
    LinkedInMessageHandler,
    NoActionHandler,
    LookupHandler,
    UpdatePipelineStageHandler,
    AddContactHandler,
)

__all__ = [
    "ActionHandler",
    "AddContactHandler",
    "CallHandler",
    "DEFAULT_HANDLERS",
    "EmailHandler",
    "HandlerDependencies",
    "LinkedInMessageHandler",
    "LookupHandler",
    "MeetingHandler",
    "NoActionHandler",
    "TaskHandler",
    "UpdatePipelineStageHandler",
]
