"""
A2A (Agent-to-Agent) Protocol Data Models

Python implementation of the A2A wire types. Field names, discriminator tags
and enumerated values follow the protocol schema verbatim so that payloads
interoperate with other A2A implementations.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, JsonValue, TypeAdapter, field_validator, model_validator


# ===== FOUNDATIONAL TYPES =====

class TransportProtocol(str, Enum):
    """Supported A2A transport protocols."""
    JSONRPC = "JSONRPC"
    GRPC = "GRPC"
    HTTP_JSON = "HTTP+JSON"


class TaskState(str, Enum):
    """Defines the lifecycle states of a Task."""
    SUBMITTED = "submitted"
    WORKING = "working"
    INPUT_REQUIRED = "input-required"
    COMPLETED = "completed"
    CANCELED = "canceled"
    FAILED = "failed"
    REJECTED = "rejected"
    AUTH_REQUIRED = "auth-required"
    UNKNOWN = "unknown"


TERMINAL_STATES = frozenset({
    TaskState.COMPLETED,
    TaskState.CANCELED,
    TaskState.FAILED,
    TaskState.REJECTED,
})

# States where the agent stops making progress until someone acts on the task.
INTERRUPTED_STATES = frozenset({
    TaskState.INPUT_REQUIRED,
    TaskState.AUTH_REQUIRED,
    TaskState.UNKNOWN,
})


def is_terminal(state: TaskState) -> bool:
    return state in TERMINAL_STATES


# Structured "any JSON object" payloads (DataPart, metadata).
JsonObject = Dict[str, JsonValue]


# ===== SECURITY SCHEMES =====

class SecuritySchemeBase(BaseModel):
    """Base properties shared by all security scheme objects."""
    description: Optional[str] = None


class APIKeySecurityScheme(SecuritySchemeBase):
    """Defines a security scheme using an API key."""
    type: Literal["apiKey"] = "apiKey"
    in_: str = Field(alias="in", description="The location of the API key")
    name: str = Field(description="The name of the header, query, or cookie parameter")

    model_config = {"populate_by_name": True}

    @field_validator("in_")
    def validate_in(cls, v):
        if v not in ["query", "header", "cookie"]:
            raise ValueError("API key location must be 'query', 'header', or 'cookie'")
        return v


class HTTPAuthSecurityScheme(SecuritySchemeBase):
    """Defines a security scheme using HTTP authentication."""
    type: Literal["http"] = "http"
    scheme: str = Field(description="The HTTP authentication scheme")
    bearerFormat: Optional[str] = Field(None, description="Bearer token format hint")


class MutualTLSSecurityScheme(SecuritySchemeBase):
    """Defines a security scheme using mTLS authentication."""
    type: Literal["mutualTLS"] = "mutualTLS"


class AuthorizationCodeOAuthFlow(BaseModel):
    """Defines configuration details for the OAuth 2.0 Authorization Code flow."""
    authorizationUrl: str
    tokenUrl: str
    refreshUrl: Optional[str] = None
    scopes: Dict[str, str]


class ClientCredentialsOAuthFlow(BaseModel):
    """Defines configuration details for the OAuth 2.0 Client Credentials flow."""
    tokenUrl: str
    refreshUrl: Optional[str] = None
    scopes: Dict[str, str]


class ImplicitOAuthFlow(BaseModel):
    """Defines configuration details for the OAuth 2.0 Implicit flow."""
    authorizationUrl: str
    refreshUrl: Optional[str] = None
    scopes: Dict[str, str]


class PasswordOAuthFlow(BaseModel):
    """Defines configuration details for the OAuth 2.0 Resource Owner Password flow."""
    tokenUrl: str
    refreshUrl: Optional[str] = None
    scopes: Dict[str, str]


class OAuthFlows(BaseModel):
    """Defines the configuration for the supported OAuth 2.0 flows."""
    authorizationCode: Optional[AuthorizationCodeOAuthFlow] = None
    clientCredentials: Optional[ClientCredentialsOAuthFlow] = None
    implicit: Optional[ImplicitOAuthFlow] = None
    password: Optional[PasswordOAuthFlow] = None


class OAuth2SecurityScheme(SecuritySchemeBase):
    """Defines a security scheme using OAuth 2.0."""
    type: Literal["oauth2"] = "oauth2"
    flows: OAuthFlows
    oauth2MetadataUrl: Optional[str] = None


class OpenIdConnectSecurityScheme(SecuritySchemeBase):
    """Defines a security scheme using OpenID Connect."""
    type: Literal["openIdConnect"] = "openIdConnect"
    openIdConnectUrl: str


SecurityScheme = Annotated[
    Union[
        APIKeySecurityScheme,
        HTTPAuthSecurityScheme,
        OAuth2SecurityScheme,
        OpenIdConnectSecurityScheme,
        MutualTLSSecurityScheme,
    ],
    Field(discriminator="type"),
]


# ===== AGENT CARD COMPONENTS =====

class AgentProvider(BaseModel):
    """Represents the service provider of an agent."""
    organization: str
    url: str


class AgentExtension(BaseModel):
    """A declaration of a protocol extension supported by an Agent."""
    uri: str
    description: Optional[str] = None
    required: Optional[bool] = None
    params: Optional[JsonObject] = None


class AgentCapabilities(BaseModel):
    """Defines optional capabilities supported by an agent."""
    streaming: Optional[bool] = None
    pushNotifications: Optional[bool] = None
    stateTransitionHistory: Optional[bool] = None
    extensions: Optional[List[AgentExtension]] = None


class AgentSkill(BaseModel):
    """Represents a distinct capability or function that an agent can perform."""
    id: str
    name: str
    description: str
    tags: List[str]
    examples: Optional[List[str]] = None
    inputModes: Optional[List[str]] = None
    outputModes: Optional[List[str]] = None
    security: Optional[List[Dict[str, List[str]]]] = None


class AgentInterface(BaseModel):
    """Declares a combination of a target URL and a transport protocol."""
    url: str
    transport: Union[TransportProtocol, str]


class AgentCardSignature(BaseModel):
    """AgentCardSignature represents a JWS signature of an AgentCard."""
    protected: str
    signature: str
    header: Optional[JsonObject] = None


class AgentCard(BaseModel):
    """The AgentCard is a self-describing manifest for an agent."""
    protocolVersion: str = "0.3.0"
    name: str
    description: str
    url: str
    preferredTransport: Optional[Union[TransportProtocol, str]] = None
    additionalInterfaces: Optional[List[AgentInterface]] = None
    iconUrl: Optional[str] = None
    provider: Optional[AgentProvider] = None
    version: str
    documentationUrl: Optional[str] = None
    capabilities: AgentCapabilities
    securitySchemes: Optional[Dict[str, SecurityScheme]] = None
    security: Optional[List[Dict[str, List[str]]]] = None
    defaultInputModes: List[str] = ["text/plain"]
    defaultOutputModes: List[str] = ["text/plain"]
    skills: List[AgentSkill]
    supportsAuthenticatedExtendedCard: Optional[bool] = None
    signatures: Optional[List[AgentCardSignature]] = None


# ===== CONTENT PARTS =====

class PartBase(BaseModel):
    """Defines base properties common to all message or artifact parts."""
    metadata: Optional[JsonObject] = None


class TextPart(PartBase):
    """Represents a text segment within a message or artifact."""
    kind: Literal["text"] = "text"
    text: str


class FileBase(BaseModel):
    """Defines base properties for a file."""
    name: Optional[str] = None
    mimeType: Optional[str] = None


class FileWithBytes(FileBase):
    """Represents a file with its content provided directly as a base64-encoded string."""
    bytes: str


class FileWithUri(FileBase):
    """Represents a file with its content located at a specific URI."""
    uri: str


class FilePart(PartBase):
    """Represents a file segment within a message or artifact."""
    kind: Literal["file"] = "file"
    file: Union[FileWithBytes, FileWithUri]

    @model_validator(mode="before")
    @classmethod
    def validate_file_payload(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("file"), dict):
            file_data = data["file"]
            if ("bytes" in file_data) == ("uri" in file_data):
                raise ValueError("file must carry exactly one of 'bytes' or 'uri'")
        return data


class DataPart(PartBase):
    """Represents a structured data segment within a message or artifact."""
    kind: Literal["data"] = "data"
    data: JsonObject


Part = Annotated[Union[TextPart, FilePart, DataPart], Field(discriminator="kind")]


# ===== TASK AND MESSAGE TYPES =====

class Message(BaseModel):
    """Represents a single message in the conversation between a user and an agent."""
    role: Literal["user", "agent"]
    parts: List[Part] = Field(min_length=1)
    messageId: str = Field(min_length=1)
    taskId: Optional[str] = None
    contextId: Optional[str] = None
    metadata: Optional[JsonObject] = None
    extensions: Optional[List[str]] = None
    referenceTaskIds: Optional[List[str]] = None
    kind: Literal["message"] = "message"


class Artifact(BaseModel):
    """Represents a file, data structure, or other resource generated by an agent."""
    artifactId: str
    name: Optional[str] = None
    description: Optional[str] = None
    parts: List[Part] = Field(min_length=1)
    metadata: Optional[JsonObject] = None
    extensions: Optional[List[str]] = None


class TaskStatus(BaseModel):
    """Represents the status of a task at a specific point in time."""
    state: TaskState
    message: Optional[Message] = None
    timestamp: Optional[str] = None


class Task(BaseModel):
    """Represents a single, stateful operation or conversation between a client and an agent."""
    id: str
    contextId: str
    status: TaskStatus
    history: List[Message] = Field(default_factory=list)
    artifacts: List[Artifact] = Field(default_factory=list)
    metadata: JsonObject = Field(default_factory=dict)
    kind: Literal["task"] = "task"


# ===== PUSH NOTIFICATIONS =====

class PushNotificationAuthenticationInfo(BaseModel):
    """Defines authentication details for a push notification endpoint."""
    schemes: List[str]
    credentials: Optional[str] = None


class PushNotificationConfig(BaseModel):
    """Defines the configuration for setting up push notifications."""
    id: Optional[str] = None
    url: str
    token: Optional[str] = None
    authentication: Optional[PushNotificationAuthenticationInfo] = None

    @field_validator("url")
    def validate_url(cls, v):
        if not v.startswith(("http://", "https://")):
            raise ValueError("Push notification url must be an http(s) URL")
        return v


class TaskPushNotificationConfig(BaseModel):
    """A container associating a push notification configuration with a specific task.

    ``deliveryStatus`` and ``lastError`` are read-only and reflect the outcome
    of webhook deliveries for this configuration.
    """
    taskId: str
    pushNotificationConfig: PushNotificationConfig
    deliveryStatus: Optional[Literal["active", "degraded"]] = None
    lastError: Optional[str] = None


# ===== EVENT TYPES =====

class TaskStatusUpdateEvent(BaseModel):
    """An event sent by the agent to notify the client of a change in a task's status."""
    taskId: str
    contextId: str
    kind: Literal["status-update"] = "status-update"
    status: TaskStatus
    final: bool
    metadata: Optional[JsonObject] = None


class TaskArtifactUpdateEvent(BaseModel):
    """An event sent by the agent to notify the client that an artifact has been generated."""
    taskId: str
    contextId: str
    kind: Literal["artifact-update"] = "artifact-update"
    artifact: Artifact
    append: Optional[bool] = None
    lastChunk: Optional[bool] = None
    metadata: Optional[JsonObject] = None


TaskUpdateEvent = Annotated[
    Union[TaskStatusUpdateEvent, TaskArtifactUpdateEvent],
    Field(discriminator="kind"),
]

SendMessageResponse = Annotated[Union[Task, Message], Field(discriminator="kind")]

StreamResponse = Annotated[
    Union[Task, Message, TaskStatusUpdateEvent, TaskArtifactUpdateEvent],
    Field(discriminator="kind"),
]


# ===== A2A REQUEST PARAMS =====

class MessageSendConfiguration(BaseModel):
    """Configuration options for message/send or message/stream requests."""
    acceptedOutputModes: Optional[List[str]] = None
    historyLength: Optional[int] = Field(None, ge=0)
    pushNotificationConfig: Optional[PushNotificationConfig] = None
    blocking: Optional[bool] = None


class MessageSendParams(BaseModel):
    """Parameters for a request to send a message to an agent."""
    message: Message
    configuration: Optional[MessageSendConfiguration] = None
    metadata: Optional[JsonObject] = None


class TaskIdParams(BaseModel):
    """Parameters containing a task ID for simple task operations.

    Accepts the resource-name form (``name: "tasks/{id}"``) used by the gRPC
    binding as an alternative to ``id``.
    """
    id: str
    metadata: Optional[JsonObject] = None

    @model_validator(mode="before")
    @classmethod
    def resolve_resource_name(cls, data: Any) -> Any:
        if isinstance(data, dict) and "id" not in data and isinstance(data.get("name"), str):
            data = dict(data)
            name = data.pop("name")
            data["id"] = name.split("/", 1)[1] if name.startswith("tasks/") else name
        return data


class TaskQueryParams(TaskIdParams):
    """Parameters for querying a task with optional history length."""
    historyLength: Optional[int] = Field(None, ge=0)


class ListTasksParams(BaseModel):
    """Parameters for listing tasks with optional filtering criteria."""
    contextId: Optional[str] = None
    status: Optional[TaskState] = None
    pageSize: Optional[int] = Field(None, ge=1, le=100)
    pageToken: Optional[str] = None
    historyLength: Optional[int] = Field(None, ge=0)
    includeArtifacts: Optional[bool] = None


class ListTasksResult(BaseModel):
    """Result object for tasks/list method containing tasks and pagination."""
    tasks: List[Task]
    totalSize: int
    pageSize: int
    nextPageToken: str


class GetTaskPushNotificationConfigParams(TaskIdParams):
    """Parameters for fetching one push notification configuration of a task."""
    pushNotificationConfigId: Optional[str] = None


class ListTaskPushNotificationConfigParams(TaskIdParams):
    """Parameters for listing the push notification configurations of a task."""


class DeleteTaskPushNotificationConfigParams(TaskIdParams):
    """Parameters for removing a push notification configuration from a task."""
    pushNotificationConfigId: str


# ===== JSON-RPC 2.0 TYPES =====

class JSONRPCMessage(BaseModel):
    """Base structure for any JSON-RPC 2.0 request, response, or notification."""
    jsonrpc: Literal["2.0"] = "2.0"
    id: Optional[Union[int, str]] = None


class JSONRPCRequest(JSONRPCMessage):
    """Represents a JSON-RPC 2.0 Request object."""
    method: str
    params: Optional[Dict[str, Any]] = None


class JSONRPCError(BaseModel):
    """Represents a JSON-RPC 2.0 Error object."""
    code: int
    message: str
    data: Optional[Any] = None


class JSONRPCSuccessResponse(BaseModel):
    """Represents a successful JSON-RPC 2.0 Response object."""
    jsonrpc: Literal["2.0"] = "2.0"
    id: Optional[Union[int, str]] = None
    result: Any


class JSONRPCErrorResponse(BaseModel):
    """Represents a JSON-RPC 2.0 Error Response object."""
    jsonrpc: Literal["2.0"] = "2.0"
    id: Optional[Union[int, str]] = None
    error: JSONRPCError


# ===== A2A REQUEST VARIANTS =====

class SendMessageRequest(JSONRPCMessage):
    method: Literal["message/send"] = "message/send"
    params: MessageSendParams


class SendStreamingMessageRequest(JSONRPCMessage):
    method: Literal["message/stream"] = "message/stream"
    params: MessageSendParams


class GetTaskRequest(JSONRPCMessage):
    method: Literal["tasks/get"] = "tasks/get"
    params: TaskQueryParams


class ListTasksRequest(JSONRPCMessage):
    method: Literal["tasks/list"] = "tasks/list"
    params: ListTasksParams = Field(default_factory=ListTasksParams)


class CancelTaskRequest(JSONRPCMessage):
    method: Literal["tasks/cancel"] = "tasks/cancel"
    params: TaskIdParams


class TaskResubscriptionRequest(JSONRPCMessage):
    method: Literal["tasks/resubscribe"] = "tasks/resubscribe"
    params: TaskIdParams


class SetTaskPushNotificationConfigRequest(JSONRPCMessage):
    method: Literal["tasks/pushNotificationConfig/set"] = "tasks/pushNotificationConfig/set"
    params: TaskPushNotificationConfig


class GetTaskPushNotificationConfigRequest(JSONRPCMessage):
    method: Literal["tasks/pushNotificationConfig/get"] = "tasks/pushNotificationConfig/get"
    params: GetTaskPushNotificationConfigParams


class ListTaskPushNotificationConfigRequest(JSONRPCMessage):
    method: Literal["tasks/pushNotificationConfig/list"] = "tasks/pushNotificationConfig/list"
    params: ListTaskPushNotificationConfigParams


class DeleteTaskPushNotificationConfigRequest(JSONRPCMessage):
    method: Literal["tasks/pushNotificationConfig/delete"] = "tasks/pushNotificationConfig/delete"
    params: DeleteTaskPushNotificationConfigParams


class GetAuthenticatedExtendedCardRequest(JSONRPCMessage):
    method: Literal["agent/getAuthenticatedExtendedCard"] = "agent/getAuthenticatedExtendedCard"
    params: Optional[Dict[str, Any]] = None


A2ARequest = Annotated[
    Union[
        SendMessageRequest,
        SendStreamingMessageRequest,
        GetTaskRequest,
        ListTasksRequest,
        CancelTaskRequest,
        TaskResubscriptionRequest,
        SetTaskPushNotificationConfigRequest,
        GetTaskPushNotificationConfigRequest,
        ListTaskPushNotificationConfigRequest,
        DeleteTaskPushNotificationConfigRequest,
        GetAuthenticatedExtendedCardRequest,
    ],
    Field(discriminator="method"),
]

a2a_request_adapter: TypeAdapter[A2ARequest] = TypeAdapter(A2ARequest)

SUPPORTED_METHODS = tuple(
    variant.model_fields["method"].default
    for variant in (
        SendMessageRequest,
        SendStreamingMessageRequest,
        GetTaskRequest,
        ListTasksRequest,
        CancelTaskRequest,
        TaskResubscriptionRequest,
        SetTaskPushNotificationConfigRequest,
        GetTaskPushNotificationConfigRequest,
        ListTaskPushNotificationConfigRequest,
        DeleteTaskPushNotificationConfigRequest,
        GetAuthenticatedExtendedCardRequest,
    )
)


# ===== A2A ERROR TYPES =====

class JSONParseError(BaseModel):
    """Invalid JSON was received by the server."""
    code: int = -32700
    message: str = "Invalid JSON payload"
    data: Optional[Any] = None


class InvalidRequestError(BaseModel):
    """The JSON sent is not a valid Request object."""
    code: int = -32600
    message: str = "Request payload validation error"
    data: Optional[Any] = None


class MethodNotFoundError(BaseModel):
    """The method does not exist / is not available."""
    code: int = -32601
    message: str = "Method not found"
    data: Optional[Any] = None


class InvalidParamsError(BaseModel):
    """Invalid method parameter(s)."""
    code: int = -32602
    message: str = "Invalid parameters"
    data: Optional[Any] = None


class InternalError(BaseModel):
    """Internal JSON-RPC error."""
    code: int = -32603
    message: str = "Internal error"
    data: Optional[Any] = None


class TaskNotFoundError(BaseModel):
    """An A2A-specific error indicating that the requested task ID was not found."""
    code: int = -32001
    message: str = "Task not found"
    data: Optional[Any] = None


class TaskNotCancelableError(BaseModel):
    """An A2A-specific error indicating that the task is in a state where it cannot be canceled."""
    code: int = -32002
    message: str = "Task cannot be canceled"
    data: Optional[Any] = None


class PushNotificationNotSupportedError(BaseModel):
    """An A2A-specific error indicating that the agent does not support push notifications."""
    code: int = -32003
    message: str = "Push Notification is not supported"
    data: Optional[Any] = None


class UnsupportedOperationError(BaseModel):
    """An A2A-specific error indicating that the requested operation is not supported."""
    code: int = -32004
    message: str = "This operation is not supported"
    data: Optional[Any] = None


class ContentTypeNotSupportedError(BaseModel):
    """An A2A-specific error indicating an incompatibility between content types."""
    code: int = -32005
    message: str = "Incompatible content types"
    data: Optional[Any] = None


class InvalidAgentResponseError(BaseModel):
    """An A2A-specific error indicating that the agent returned an invalid response."""
    code: int = -32006
    message: str = "Invalid agent response"
    data: Optional[Any] = None


class AuthenticatedExtendedCardNotConfiguredError(BaseModel):
    """An A2A-specific error indicating that the agent does not have an extended card configured."""
    code: int = -32007
    message: str = "Authenticated Extended Card is not configured"
    data: Optional[Any] = None


A2AError = Union[
    JSONParseError,
    InvalidRequestError,
    MethodNotFoundError,
    InvalidParamsError,
    InternalError,
    TaskNotFoundError,
    TaskNotCancelableError,
    PushNotificationNotSupportedError,
    UnsupportedOperationError,
    ContentTypeNotSupportedError,
    InvalidAgentResponseError,
    AuthenticatedExtendedCardNotConfiguredError,
]


# ===== UTILITY FUNCTIONS =====

def generate_id(prefix: str = "") -> str:
    """Generate a unique ID for A2A entities."""
    return f"{prefix}{uuid4()}" if prefix else str(uuid4())


def create_task_id() -> str:
    """Generate a unique task ID."""
    return generate_id("task_")


def create_context_id() -> str:
    """Generate a unique context ID."""
    return generate_id("ctx_")


def create_message_id() -> str:
    """Generate a unique message ID."""
    return generate_id("msg_")


def create_push_config_id() -> str:
    """Generate a unique push notification configuration ID."""
    return generate_id("push_")


def current_timestamp() -> str:
    """Return an ISO-8601 UTC timestamp, as used on the A2A wire."""
    return datetime.now(timezone.utc).isoformat()
