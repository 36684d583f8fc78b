from __future__ import annotations

from threading import Lock
import time
from typing import Callable, Mapping

import httpx

from medai_tasks.domain.errors import (
    ExecutionError,
    InvalidCredentialsError,
    NetworkError,
    RateLimitError,
    RemoteNotFoundError,
    RemoteServerError,
    RemoteTimeoutError,
    ValidationError,
    WorkflowClientError,
)
from medai_tasks.observability import get_logger, get_tracer, span
from medai_tasks.workflow_client.base import (
    ApplicationMode,
    DifyConfig,
    ExecutionResult,
    InputValidationResult,
    StreamCallback,
    iter_sse_payloads,
    normalize_mode,
    to_stream_event,
)
from medai_tasks.workflow_client.modes import ModeProtocol, StreamAccumulator, protocol_for

_log = get_logger('medai_tasks.workflow_client')
_tracer = get_tracer('medai_tasks.workflow_client')


def _status_error(status_code: int, message: str, *, code: str | None, details: object) -> WorkflowClientError:
    if status_code == 401:
        return InvalidCredentialsError(message, code=code, status_code=status_code, details=details)
    if status_code == 404:
        return RemoteNotFoundError(message, code=code, status_code=status_code, details=details)
    if status_code == 400:
        return ValidationError(message, code=code, status_code=status_code, details=details)
    if status_code == 429:
        return RateLimitError(message, code=code, status_code=status_code, details=details)
    if status_code >= 500:
        return RemoteServerError(message, code=code, status_code=status_code, details=details)
    return WorkflowClientError(message, code=code, status_code=status_code, details=details)


def _error_from_response(response: httpx.Response) -> WorkflowClientError:
    try:
        body = response.json()
    except ValueError:
        body = None
    code = None
    message = ''
    if isinstance(body, dict):
        code = str(body.get('code') or '').strip() or None
        message = str(body.get('message') or body.get('error') or '').strip()
    if not message:
        message = response.text.strip() or f'HTTP {response.status_code}'
    return _status_error(response.status_code, message, code=code, details=body)


class DifyClient:
    """HTTP client for one remote AI application (one base URL, one API key).

    Blocking calls retry transient failures up to ``max_retries`` attempts,
    sleeping ``retry_delay_seconds * attempt`` between them. Credential,
    not-found and validation failures surface immediately. Streaming calls
    are never retried: a half-consumed stream cannot be replayed safely.
    """

    def __init__(
        self,
        config: DifyConfig,
        *,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self._sleep = sleep
        self._mode: ApplicationMode | None = None
        self._mode_lock = Lock()
        self._http = httpx.Client(
            base_url=config.normalized_base_url,
            headers={
                'Authorization': f'Bearer {config.api_key}',
                'Content-Type': 'application/json',
            },
            timeout=httpx.Timeout(float(config.timeout_seconds)),
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def is_configured(self) -> bool:
        return bool(str(self.config.api_key or '').strip()) and bool(self.config.normalized_base_url)

    def config_info(self) -> dict:
        return {
            'base_url': self.config.normalized_base_url,
            'has_api_key': bool(str(self.config.api_key or '').strip()),
            'timeout_seconds': float(self.config.timeout_seconds),
            'max_retries': int(self.config.max_retries),
            'retry_delay_seconds': float(self.config.retry_delay_seconds),
        }

    def get_application_info(self) -> dict:
        return self._request('GET', '/info')

    def get_application_mode(self) -> ApplicationMode:
        if self._mode is not None:
            return self._mode
        with self._mode_lock:
            if self._mode is None:
                info = self.get_application_info()
                mode = normalize_mode(info.get('mode'))
                if mode is None:
                    raise ValidationError(f"unsupported application mode: {info.get('mode')!r}", details=info)
                _log.info('application_mode_resolved base_url=%s mode=%s', self.config.normalized_base_url, mode.value)
                self._mode = mode
        return self._mode

    def get_application_parameters(self) -> dict:
        return self._request('GET', '/parameters')

    def validate_inputs(self, inputs: object) -> InputValidationResult:
        if not isinstance(inputs, Mapping):
            return InputValidationResult(
                is_valid=False,
                errors=[{'field': 'inputs', 'message': 'inputs must be an object'}],
            )
        errors = [
            {'field': str(name), 'message': 'value must not be null'}
            for name, value in inputs.items()
            if value is None
        ]
        return InputValidationResult(is_valid=not errors, errors=errors)

    def execute(
        self,
        inputs: Mapping[str, object],
        *,
        user: str,
        conversation_id: str | None = None,
        files: list[dict] | None = None,
    ) -> ExecutionResult:
        self._ensure_valid(inputs)
        protocol = self._protocol()
        if not protocol.supports_blocking:
            return self.execute_streaming(
                inputs,
                lambda _event: None,
                user=user,
                conversation_id=conversation_id,
                files=files,
            )
        body = protocol.build_request(
            inputs,
            user=user,
            response_mode='blocking',
            conversation_id=conversation_id,
            files=files,
        )
        with span(_tracer, 'workflow_client.execute', {'app.mode': protocol.mode.value, 'user': user}):
            payload = self._request('POST', protocol.request_path(), json=body)
        result = protocol.parse_blocking(payload)
        _log.info(
            'remote_execution_finished mode=%s remote_id=%s status=%s',
            result.mode,
            result.remote_execution_id,
            result.status,
        )
        return result

    def execute_streaming(
        self,
        inputs: Mapping[str, object],
        on_event: StreamCallback,
        *,
        user: str,
        conversation_id: str | None = None,
        files: list[dict] | None = None,
    ) -> ExecutionResult:
        self._ensure_valid(inputs)
        protocol = self._protocol()
        body = protocol.build_request(
            inputs,
            user=user,
            response_mode='streaming',
            conversation_id=conversation_id,
            files=files,
        )
        with span(_tracer, 'workflow_client.execute_streaming', {'app.mode': protocol.mode.value, 'user': user}):
            try:
                with self._http.stream('POST', protocol.request_path(), json=body) as response:
                    if response.status_code >= 400:
                        response.read()
                        raise _error_from_response(response)
                    return self._consume_stream(protocol, response, on_event)
            except httpx.TimeoutException as exc:
                raise RemoteTimeoutError(f'stream timed out: {exc}') from exc
            except httpx.HTTPError as exc:
                raise NetworkError(f'stream transport failed: {exc}') from exc

    def stop(self, remote_execution_id: str, *, user: str) -> dict:
        remote_id = str(remote_execution_id or '').strip()
        if not remote_id:
            raise ValidationError('remote execution id is required', details={'field': 'remote_execution_id'})
        protocol = self._protocol()
        try:
            return self._request('POST', protocol.stop_path(remote_id), json={'user': user})
        except WorkflowClientError as exc:
            raise ExecutionError(
                f'failed to stop remote task {remote_id}: {exc.message}',
                status_code=exc.status_code,
                details={'cause': exc.code},
            ) from exc

    def _protocol(self) -> ModeProtocol:
        return protocol_for(self.get_application_mode())

    def _ensure_valid(self, inputs: object) -> None:
        validation = self.validate_inputs(inputs)
        if not validation.is_valid:
            fields = ', '.join(e['field'] for e in validation.errors)
            raise ValidationError(f'invalid inputs: {fields}', details=validation.errors)

    def _consume_stream(self, protocol: ModeProtocol, response: httpx.Response, on_event: StreamCallback) -> ExecutionResult:
        state = StreamAccumulator()
        for payload in iter_sse_payloads(response.iter_lines()):
            event = to_stream_event(payload)
            try:
                on_event(event)
            except Exception:
                _log.warning('stream_callback_failed event=%s', event.event, exc_info=True)
            result = protocol.consume_event(state, event)
            if result is not None:
                return result
        raise ExecutionError(
            f'stream ended before {protocol.terminal_event}',
            details={'task_id': state.task_id, 'run_id': state.run_id},
        )

    def _request(self, method: str, path: str, *, json: dict | None = None) -> dict:
        attempts = max(1, int(self.config.max_retries))
        last_error: WorkflowClientError | None = None
        for attempt in range(1, attempts + 1):
            try:
                response = self._http.request(method, path, json=json)
                if response.status_code >= 400:
                    raise _error_from_response(response)
                if not response.content:
                    return {}
                body = response.json()
                return body if isinstance(body, dict) else {'data': body}
            except WorkflowClientError as exc:
                if not exc.retryable:
                    raise
                last_error = exc
            except httpx.TimeoutException as exc:
                last_error = RemoteTimeoutError(f'request timed out: {exc}')
            except httpx.HTTPError as exc:
                last_error = NetworkError(f'transport failed: {exc}')
            except ValueError as exc:
                last_error = RemoteServerError(f'malformed response body: {exc}')

            _log.warning(
                'remote_request_failed method=%s path=%s attempt=%d/%d code=%s',
                method,
                path,
                attempt,
                attempts,
                last_error.code,
            )
            if attempt < attempts:
                self._sleep(float(self.config.retry_delay_seconds) * attempt)

        raise NetworkError(
            f'network request failed, retried {attempts} times (已重试{attempts}次): {last_error.message}',
            status_code=last_error.status_code,
            details={'last_code': last_error.code},
        )
