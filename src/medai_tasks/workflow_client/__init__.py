from __future__ import annotations

from medai_tasks.workflow_client.base import (
    ApplicationMode,
    DifyConfig,
    ExecutionResult,
    InputValidationResult,
    StreamEvent,
    iter_sse_payloads,
)
from medai_tasks.workflow_client.client import DifyClient
from medai_tasks.workflow_client.factory import WorkflowClientFactory
from medai_tasks.workflow_client.modes import (
    ChatProtocol,
    CompletionProtocol,
    ModeProtocol,
    WorkflowProtocol,
    protocol_for,
)

__all__ = [
    'ApplicationMode',
    'ChatProtocol',
    'CompletionProtocol',
    'DifyClient',
    'DifyConfig',
    'ExecutionResult',
    'InputValidationResult',
    'ModeProtocol',
    'StreamEvent',
    'WorkflowClientFactory',
    'WorkflowProtocol',
    'iter_sse_payloads',
    'protocol_for',
]
