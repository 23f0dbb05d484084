# api_runner.py

import asyncio
import aiohttp
import copy
import json
import logging
import random
import time
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union
from urllib.parse import quote, urlencode, urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

from command_template import (
    UnknownVariableError,
    expand_store_placeholders,
    normalize_media_type,
    resolve_configured_placeholders,
    substitute_first_values,
    wrap_body,
)
from entry_saver import EntrySaver, EntrySink, EntryToSave, InMemoryEntrySink
from json_path import AlternativeOption, filtered_extract, is_blank, parse_alternative_option, set_values_at, stringify
from variable_store import VariableStore, wrap_key

# --- Logging Setup ---
logger = logging.getLogger("ApiRunner")
if not logger.hasHandlers():
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    formatter = logging.Formatter('%(asctime)sZ - %(levelname)s - %(name)s - %(message)s')
    formatter.converter = time.gmtime # UTC timestamps
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
logger.propagate = False # Prevent duplicate logs if root logger is configured

__all__ = [
    "logger",
    "Target",
    "FilterSpec",
    "BodySpec",
    "UpdateEntry",
    "UpdateSpec",
    "CommandSpec",
    "PipelineDefinition",
    "RunnerConfig",
    "StartRequest",
    "FailureKind",
    "PipelineStatus",
    "StepResult",
    "CommandOutcome",
    "PipelineResult",
    "PipelineRun",
    "Metrics",
    "PreparedCommand",
    "build_request_url",
    "ApiRunner",
    "run_pipeline_blocking",
]

SUPPORTED_METHODS = ("GET", "POST", "PUT", "PATCH")

# ---------------------------
# Pipeline Pydantic Models
# ---------------------------

class Target(BaseModel):
    var: str = Field(..., description="Variable that receives the extracted values, e.g. 'mms_id' or '{$mms_id}'")
    path: str = Field("", description="Dot-separated JSON path of the values, e.g. 'bib.mms_id'")
    type: str = Field("object", description="'object' keeps JSON values as they are, 'string' stores their string form")

    model_config = ConfigDict(frozen=True)

    @field_validator('type', mode='before')
    def validate_type(cls, v):
        normalized = (v or "object").strip().lower()
        if normalized not in ("object", "string"):
            logger.warning(f"Unknown target type '{v}'. Using 'object' instead.")
            return "object"
        return normalized


class FilterSpec(BaseModel):
    key: str = Field("", description="JSON path of the value that is compared")
    fallback: Optional[str] = Field(None, description="JSON path used when the key path holds no value (defaults to key)")
    value: str = Field("", description="Value to compare against. May reference a variable, e.g. '$role'")
    alt: AlternativeOption = Field(AlternativeOption.NONE, description="all | first | last | random | none")

    model_config = ConfigDict(frozen=True)

    @field_validator('alt', mode='before')
    def validate_alt(cls, v):
        if isinstance(v, AlternativeOption):
            return v
        return parse_alternative_option(v)

    @property
    def fallback_key(self) -> str:
        return self.fallback if self.fallback else self.key


class BodySpec(BaseModel):
    type: str = Field("json", description="json | xml")
    content: Optional[str] = Field(None, description="Inline body template. Can contain {$variables}.")
    src: Optional[str] = Field(None, description="Path of a file holding the body template")
    wrapper: str = Field("", description="Space-separated tags wrapped around the body, innermost first")

    model_config = ConfigDict(frozen=True)


class UpdateEntry(BaseModel):
    path: str = Field(..., description="JSON path inside the captured response")
    value: Any = Field(None, description="New value. Strings containing '$' are read from the variable store.")

    model_config = ConfigDict(frozen=True)


class UpdateSpec(BaseModel):
    var: str = Field(..., description="Variable that receives the whole (updated) response document")
    entries: List[UpdateEntry] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class CommandSpec(BaseModel):
    id: Optional[str] = Field(None, description="Identifier used in logs and results")
    method: str = Field("GET", description="GET | POST | PUT | PATCH. Other methods are skipped.")
    endpoint: str = Field(..., description="Endpoint template relative to the base URL. Can contain {placeholders} and {$variables}.")
    accept: str = Field("json", description="json | xml")
    parameters: Dict[str, str] = Field(default_factory=dict, description="Query parameters")
    headers: Dict[str, str] = Field(default_factory=dict, description="Additional request headers")
    placeholders: Dict[str, str] = Field(default_factory=dict, description="Values of the {placeholders} in the endpoint")
    body: Optional[BodySpec] = None
    filter_spec: Optional[FilterSpec] = Field(None, alias="filter")
    targets: List[Target] = Field(default_factory=list)
    update: Optional[UpdateSpec] = None

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    @field_validator('method')
    def validate_method(cls, v):
        method_upper = v.strip().upper()
        if method_upper not in SUPPORTED_METHODS:
            logger.warning(f"Unsupported method '{v}'. Requests of this command will be skipped.")
        return method_upper


class PipelineDefinition(BaseModel):
    name: str = Field("pipeline", description="Name of the pipeline")
    description: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict, description="Static variables available before the first command")
    commands: List[CommandSpec] = Field(default_factory=list)
    save: List[EntryToSave] = Field(default_factory=list, description="Entries written back to the host after all commands")

    model_config = ConfigDict(extra="ignore")


class RunnerConfig(BaseModel):
    """Runtime configuration for ApiRunner."""
    url: str = Field(..., description="Base URL of the REST API")
    api_key: str = Field("", description="Sent as the 'apikey' query parameter when set")
    debug: bool = Field(default=False, description="Enable debug logging")
    request_timeout_s: float = Field(default=60.0, gt=0, description="Max total time of one request")
    connect_timeout_s: float = Field(default=10.0, gt=0, description="Max time to establish a connection")

    model_config = ConfigDict(
        populate_by_name=True,
        extra="allow",
        alias_generator=lambda field_name: {
            'url': 'URL',
            'api_key': 'API Key',
            'debug': 'Debug',
            'request_timeout_s': 'Request Timeout S',
            'connect_timeout_s': 'Connect Timeout S',
        }.get(field_name, field_name),
    )

    @field_validator('url')
    def validate_url(cls, v):
        parsed = urlparse(v)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"url must be an absolute URL (e.g., 'https://api.example.com'), got '{v}'")
        return v


class StartRequest(BaseModel):
    config: RunnerConfig
    pipeline: PipelineDefinition

# ---------------------------
# Results
# ---------------------------

class FailureKind(str, Enum):
    CONFIGURATION = "configuration"
    RESOLUTION = "resolution"
    TRANSPORT = "transport"
    PARSE = "parse"
    UNEXPECTED = "unexpected"


class PipelineStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class StepResult(BaseModel):
    """Outcome of one resolution, request or parse step."""
    ok: bool
    skipped: bool = False
    kind: Optional[FailureKind] = None
    message: str = ""
    value: Any = None

    @classmethod
    def success(cls, value: Any = None) -> "StepResult":
        return cls(ok=True, value=value)

    @classmethod
    def skip(cls, message: str) -> "StepResult":
        return cls(ok=True, skipped=True, message=message)

    @classmethod
    def failure(cls, kind: FailureKind, message: str) -> "StepResult":
        return cls(ok=False, kind=kind, message=message)


class CommandOutcome(BaseModel):
    command_id: str
    endpoints: List[str] = Field(default_factory=list)
    responses: int = Field(0, description="Responses that were parsed and used for extraction")
    failure: Optional[FailureKind] = None
    errors: List[str] = Field(default_factory=list, description="Handled problems, e.g. transport or parse errors of single endpoints")

    @property
    def succeeded(self) -> bool:
        return self.failure is None


class PipelineResult(BaseModel):
    name: str
    status: PipelineStatus
    outcomes: List[CommandOutcome] = Field(default_factory=list)
    failed_saves: List[str] = Field(default_factory=list)
    variables: Dict[str, List[Any]] = Field(default_factory=dict)
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == PipelineStatus.SUCCESS


class PipelineRun:
    """State of one pipeline run: PENDING -> RUNNING -> SUCCESS | FAILED."""

    _TRANSITIONS = {
        PipelineStatus.PENDING: {PipelineStatus.RUNNING},
        PipelineStatus.RUNNING: {PipelineStatus.SUCCESS, PipelineStatus.FAILED},
        PipelineStatus.SUCCESS: set(),
        PipelineStatus.FAILED: set(),
    }

    def __init__(self, name: str):
        self.name = name
        self.status = PipelineStatus.PENDING
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return not self._TRANSITIONS[self.status]

    def transition(self, new_status: PipelineStatus) -> None:
        if new_status not in self._TRANSITIONS[self.status]:
            raise RuntimeError(f"Pipeline '{self.name}' cannot move from {self.status.value} to {new_status.value}")
        if new_status == PipelineStatus.RUNNING:
            self.started_at = time.monotonic()
        elif new_status in (PipelineStatus.SUCCESS, PipelineStatus.FAILED):
            self.finished_at = time.monotonic()
        logger.debug(f"Pipeline '{self.name}': {self.status.value} -> {new_status.value}")
        self.status = new_status

    @property
    def duration_ms(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return (end - self.started_at) * 1000.0

# ---------------------------
# Metrics Tracking
# ---------------------------
class Metrics:
    """
    Counts requests and transport errors and computes the average command duration.
    Safe to share between coroutines using asyncio.Lock.
    """
    def __init__(self):
        self.lock = asyncio.Lock()
        self.request_count = 0
        self.transport_error_count = 0
        self.command_duration_sum = 0.0
        self.command_count = 0

    async def increment(self):
        """Record that a request was sent and answered."""
        async with self.lock:
            self.request_count += 1

    async def record_transport_error(self):
        async with self.lock:
            self.transport_error_count += 1

    async def record_command_duration(self, duration_seconds: float):
        """Record the duration of a completed command (all of its endpoints)."""
        if duration_seconds < 0:
            logger.warning(f"Attempted to record negative command duration: {duration_seconds:.3f}s. Ignoring.")
            return
        async with self.lock:
            self.command_duration_sum += duration_seconds
            self.command_count += 1

    async def get_request_count(self) -> int:
        async with self.lock:
            return self.request_count

    async def get_average_command_duration_ms(self) -> float:
        """Return the average duration of completed commands in milliseconds."""
        async with self.lock:
            if self.command_count == 0:
                return 0.0
            return (self.command_duration_sum / self.command_count) * 1000.0

# ---------------------------
# Request Helpers
# ---------------------------

def build_request_url(base_url: str, endpoint: str, parameters: Dict[str, str], api_key: str = "") -> str:
    """
    base + '/' (unless one side already has it) + endpoint + '?' + query parameters,
    with the API key appended as 'apikey'.
    """
    url = base_url
    if not base_url.endswith("/") and not endpoint.startswith("/"):
        url += "/"
    url += endpoint

    pairs = list(parameters.items())
    if api_key:
        pairs.append(("apikey", api_key))
    if pairs:
        url += ("&" if "?" in endpoint else "?") + urlencode(pairs, quote_via=quote)
    return url


def _preview(value: Any, limit: int = 250) -> str:
    text = value if isinstance(value, str) else repr(value)
    return f"{text[:limit]}{'...' if len(text) > limit else ''}"


class PreparedCommand:
    """
    A CommandSpec combined with everything that is resolved once per run: configured
    placeholders, media types, the body template and the filter value.
    The CommandSpec itself is never modified.
    """

    def __init__(
        self,
        spec: CommandSpec,
        command_id: str,
        endpoint_template: str,
        accept: str,
        content_type: str,
        body_template: str,
        filter_value: str,
    ):
        self.spec = spec
        self.command_id = command_id
        self.endpoint_template = endpoint_template
        self.accept = accept
        self.content_type = content_type
        self.body_template = body_template
        self.filter_value = filter_value

    @property
    def method(self) -> str:
        return self.spec.method

    @property
    def targets(self) -> Dict[str, str]:
        return {target.var: target.path for target in self.spec.targets}

# ---------------------------
# Api Runner Class
# ---------------------------

class ApiRunner:
    """
    Runs the commands of a pipeline one after another against a REST API, feeding values
    extracted from each JSON response into the variable store used by later commands.
    """
    def __init__(
        self,
        config: RunnerConfig,
        pipeline: PipelineDefinition,
        metrics: Optional[Metrics] = None,
        *,
        sink: Optional[EntrySink] = None,
        rng: Optional[random.Random] = None,
        on_journal: Optional[Callable[[str, str], Any]] = None,
    ):
        self.config = config
        self.pipeline = pipeline
        self.metrics = metrics or Metrics()
        self.sink = sink or InMemoryEntrySink()
        self.rng = rng or random.Random()
        self.on_journal = on_journal
        self.last_run: Optional[PipelineRun] = None

        self.configure_logging(self.config.debug)
        logger.info(f"Api Runner Initialized: URL='{self.config.url}', Commands={len(self.pipeline.commands)}, Save entries={len(self.pipeline.save)}, Debug={self.config.debug}")

    def configure_logging(self, debug: bool):
        """Configures the logger level based on the debug flag."""
        log_level = logging.DEBUG if debug else logging.INFO
        logger.setLevel(log_level)
        for handler in logger.handlers:
            handler.setLevel(log_level)
        logger.debug(f"Api Runner logging level set to {logging.getLevelName(log_level)}")

    def create_session(self) -> aiohttp.ClientSession:
        """Creates the aiohttp ClientSession used for one run."""
        timeout = aiohttp.ClientTimeout(
            total=self.config.request_timeout_s,
            connect=self.config.connect_timeout_s,
        )
        return aiohttp.ClientSession(timeout=timeout)

    def _journal(self, level: int, message: str):
        """Log a message and mirror it to the host journal, if one is attached."""
        logger.log(level, message)
        if self.on_journal is not None:
            try:
                self.on_journal(logging.getLevelName(level), message)
            except Exception as e:
                logger.warning(f"Journal callback failed: {e}")

    def _mask(self, url: str) -> str:
        if self.config.api_key:
            return url.replace(quote(self.config.api_key, safe=""), "********")
        return url

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------

    def _resolve_reference(self, value: Any, store: VariableStore, what: str) -> Any:
        """Values containing '$' name a variable; return its first value (or the value itself if unknown)."""
        if not isinstance(value, str) or "$" not in value:
            return value
        if not store.contains(value):
            logger.error(f"Unknown variable '{value}' used as {what}. Using it literally.")
            return value
        resolved = store.first(value)
        logger.debug(f"{what} '{value}' resolved to {_preview(resolved, 100)}")
        return resolved

    def _load_body(self, body: Optional[BodySpec], command_id: str) -> str:
        if body is None:
            return ""
        if body.content is not None:
            return body.content
        if not body.src:
            logger.warning(f"Command {command_id}: body has neither content nor src. Sending an empty body.")
            return ""
        try:
            return Path(body.src).read_text(encoding="utf-8")
        except OSError as e:
            logger.error(f"Command {command_id}: failed to read body template '{body.src}': {e}. Sending an empty body.")
            return ""

    def prepare_command(self, spec: CommandSpec, index: int, store: VariableStore) -> PreparedCommand:
        command_id = spec.id or f"#{index + 1}"

        endpoint_template, missing = resolve_configured_placeholders(spec.endpoint, spec.placeholders)
        if missing:
            self._journal(logging.ERROR, f"Command {command_id}: no value configured for placeholder(s) {', '.join(missing)}.")

        accept = normalize_media_type(spec.accept, "accept")
        if spec.body is not None:
            content_type = normalize_media_type(spec.body.type, "body")
            body_template = wrap_body(self._load_body(spec.body, command_id), spec.body.wrapper, content_type)
        else:
            content_type = "application/json"
            body_template = ""

        filter_value = ""
        if spec.filter_spec is not None:
            filter_value = stringify(self._resolve_reference(spec.filter_spec.value, store, "filter value"))

        logger.debug(f"Command {command_id} prepared: {spec.method} '{endpoint_template}', Accept={accept}, Content-Type={content_type}")
        return PreparedCommand(spec, command_id, endpoint_template, accept, content_type, body_template, filter_value)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _resolve_endpoints(self, command: PreparedCommand, store: VariableStore) -> StepResult:
        try:
            endpoints = list(expand_store_placeholders(command.endpoint_template, store))
        except UnknownVariableError as e:
            return StepResult.failure(FailureKind.RESOLUTION, str(e))
        logger.debug(f"Command {command.command_id}: {len(endpoints)} endpoint(s) resolved")
        return StepResult.success(endpoints)

    async def _send_request(self, session: aiohttp.ClientSession, command: PreparedCommand, url: str, body: str) -> StepResult:
        """Send one request. The value of a successful result is the response text."""
        method = command.method
        if method not in SUPPORTED_METHODS:
            logger.debug(f"Command {command.command_id}: unknown method '{method}', nothing sent.")
            return StepResult.skip(f"unsupported method {method}")

        # configured headers override the defaults for every method
        headers = {"Accept": command.accept, "Content-Type": command.content_type}
        headers.update(command.spec.headers)
        data = None
        if method != "GET":
            data = body.encode("utf-8")

        masked_url = self._mask(url)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"\n--- REQUEST START ---\n"
                         f"Command: {command.command_id}\n"
                         f"URL: {method} {masked_url}\n"
                         f"Headers: {headers}\n"
                         f"Payload: {_preview(body, 200) if data is not None else 'None'}\n"
                         f"---------------------")

        request_start_time = time.monotonic()
        try:
            async with session.request(method, url, headers=headers, data=data) as resp:
                text = await resp.text(encoding="utf-8", errors="replace")
                request_duration_s = time.monotonic() - request_start_time
                log_level = logging.WARNING if resp.status >= 400 else logging.INFO
                logger.log(log_level, f"Command {command.command_id} received: {resp.status} {method} {masked_url} ({request_duration_s*1000:.2f} ms)")
                logger.debug(f"  Response Body: {_preview(text)}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            await self.metrics.record_transport_error()
            message = f"{type(e).__name__} while executing request {method} {masked_url}: {e}"
            logger.error(f"Command {command.command_id}: {message}")
            return StepResult.failure(FailureKind.TRANSPORT, message)

        await self.metrics.increment()
        return StepResult.success(text)

    def _parse_response(self, command: PreparedCommand, text: str) -> StepResult:
        if not command.accept.endswith("json"):
            return StepResult.skip(f"responses of type {command.accept} are not queried")
        try:
            return StepResult.success(json.loads(text))
        except json.JSONDecodeError as e:
            message = f"invalid JSON response: {e}"
            logger.error(f"Command {command.command_id}: {message}")
            return StepResult.failure(FailureKind.PARSE, message)

    def _apply_extraction(self, command: PreparedCommand, document: Any, store: VariableStore):
        spec = command.spec
        if spec.targets:
            filter_spec = spec.filter_spec or FilterSpec()
            extracted = filtered_extract(
                command.targets,
                filter_spec.key,
                filter_spec.fallback_key,
                command.filter_value,
                filter_spec.alt,
                document,
                rng=self.rng,
            )
            for target in spec.targets:
                values = extracted.get(target.var, [])
                if not values:
                    logger.debug(f"Command {command.command_id}: no match found for '{target.var}' at '{target.path}'")
                    continue
                if target.type == "string":
                    values = [stringify(value) for value in values]
                if not store.set(target.var, values):
                    logger.debug(f"Command {command.command_id}: variable '{target.var}' was not updated")

        if spec.update is not None and spec.update.var:
            updated = copy.deepcopy(document)
            for entry in spec.update.entries:
                value = self._resolve_reference(entry.value, store, "update value")
                count = set_values_at(updated, entry.path, value)
                logger.debug(f"Command {command.command_id}: updated '{entry.path}' in {count} place(s)")
            if not store.set(spec.update.var, [updated]):
                logger.debug(f"Command {command.command_id}: variable '{spec.update.var}' was not updated")

    async def execute_command(self, session: aiohttp.ClientSession, command: PreparedCommand, store: VariableStore) -> CommandOutcome:
        """
        Run one command against every endpoint it expands to.
        Resolution errors fail the command; transport and parse errors only skip the endpoint
        concerned. Anything else propagates to the caller.
        """
        outcome = CommandOutcome(command_id=command.command_id)

        resolution = self._resolve_endpoints(command, store)
        if not resolution.ok:
            outcome.failure = resolution.kind
            outcome.errors.append(resolution.message)
            self._journal(logging.ERROR, f"Command {command.command_id} skipped: {resolution.message}")
            return outcome

        body = substitute_first_values(command.body_template, store) if command.method != "GET" else ""

        for endpoint in resolution.value:
            outcome.endpoints.append(endpoint)
            url = build_request_url(self.config.url, endpoint, command.spec.parameters, self.config.api_key)

            fetched = await self._send_request(session, command, url, body)
            if not fetched.ok:
                outcome.errors.append(f"{fetched.kind.value}: {fetched.message}")
                continue
            if fetched.skipped:
                continue

            parsed = self._parse_response(command, fetched.value)
            if not parsed.ok:
                outcome.errors.append(f"{parsed.kind.value}: {parsed.message}")
                continue
            if parsed.skipped:
                continue

            self._apply_extraction(command, parsed.value, store)
            outcome.responses += 1

        return outcome

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _unexpected_outcome(self, command_id: str, stage: str, error: Exception) -> CommandOutcome:
        self._journal(logging.ERROR, f"Exception caught while {stage} command {command_id}: {type(error).__name__}: {error}")
        logger.debug("Traceback of the command failure:", exc_info=True)
        return CommandOutcome(command_id=command_id, failure=FailureKind.UNEXPECTED, errors=[str(error)])

    def seed_store(self, store: VariableStore):
        for name, value in self.pipeline.variables.items():
            raw_values = value if isinstance(value, list) else [value]
            values = [v for v in raw_values if not is_blank(v)]
            if len(values) < len(raw_values):
                logger.warning(f"Variable '{name}': {len(raw_values) - len(values)} blank value(s) ignored.")
            if not values:
                self._journal(logging.WARNING, f"Variable '{name}' has no value and was not added.")
                continue
            if store.set(name, values):
                logger.info(f"Static variable added: {wrap_key(name)} -> {_preview(values, 100)}")
            else:
                self._journal(logging.ERROR, f"Failed to add variable: {name}")

    async def run(self, store: Optional[VariableStore] = None, session: Optional[aiohttp.ClientSession] = None) -> PipelineResult:
        """
        Run every command in order, then every save entry.

        A fresh store is created unless one is passed in. Unexpected exceptions abort the
        rest of the pipeline (remaining commands and all saves) and mark the run FAILED.
        """
        run = PipelineRun(self.pipeline.name)
        self.last_run = run
        store = store if store is not None else VariableStore()
        outcomes: List[CommandOutcome] = []
        failed_saves: List[str] = []
        aborted = False

        run.transition(PipelineStatus.RUNNING)
        self._journal(logging.INFO, f"Pipeline '{self.pipeline.name}' started.")

        own_session = session is None
        session = session or self.create_session()
        try:
            self.seed_store(store)

            # every command is built before the first one runs, so filter values see the seeded store only
            commands: List[PreparedCommand] = []
            for index, spec in enumerate(self.pipeline.commands):
                try:
                    commands.append(self.prepare_command(spec, index, store))
                except Exception as e:
                    outcomes.append(self._unexpected_outcome(spec.id or f"#{index + 1}", "preparing", e))
                    aborted = True
                    break

            if not aborted:
                for command in commands:
                    command_start_time = time.monotonic()
                    try:
                        outcome = await self.execute_command(session, command, store)
                    except Exception as e:
                        outcomes.append(self._unexpected_outcome(command.command_id, "running", e))
                        aborted = True
                        break
                    outcomes.append(outcome)
                    await self.metrics.record_command_duration(time.monotonic() - command_start_time)

            if aborted:
                skipped = len(self.pipeline.commands) - len(outcomes)
                logger.warning(f"Pipeline '{self.pipeline.name}' aborted; {skipped} command(s) and {len(self.pipeline.save)} save entr(y/ies) skipped.")
            else:
                saver = EntrySaver(self.sink, self.rng)
                for entry in self.pipeline.save:
                    if not saver.save(entry, store):
                        failed_saves.append(entry.name)
        finally:
            if own_session:
                await session.close()

        # resolution failures only skip their command; they are reported in the outcomes
        succeeded = not aborted and not failed_saves
        run.transition(PipelineStatus.SUCCESS if succeeded else PipelineStatus.FAILED)
        self._journal(logging.INFO if succeeded else logging.ERROR, f"Pipeline '{self.pipeline.name}' finished: {run.status.value} ({run.duration_ms:.2f} ms)")

        return PipelineResult(
            name=self.pipeline.name,
            status=run.status,
            outcomes=outcomes,
            failed_saves=failed_saves,
            variables=store.snapshot(),
            duration_ms=run.duration_ms,
        )


def run_pipeline_blocking(
    request: Union[StartRequest, Dict[str, Any]],
    *,
    sink: Optional[EntrySink] = None,
    rng: Optional[random.Random] = None,
    on_journal: Optional[Callable[[str, str], Any]] = None,
) -> PipelineResult:
    """Run one pipeline to completion on a new event loop, for synchronous hosts."""
    if not isinstance(request, StartRequest):
        request = StartRequest.model_validate(request)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        runner = ApiRunner(request.config, request.pipeline, Metrics(), sink=sink, rng=rng, on_journal=on_journal)
        return loop.run_until_complete(runner.run())
    finally:
        loop.run_until_complete(loop.shutdown_asyncgens())
        asyncio.set_event_loop(None)
        loop.close()
