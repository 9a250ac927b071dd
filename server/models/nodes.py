"""Pydantic models for node field validation with discriminated unions.

Every node type has its own field contract. Graph validation (at mutation time)
routes a node's fields to the right model through the `type` discriminator; the
interpreter uses the same contracts for its required-field presence check.
"""

from typing import Literal, Union, Annotated, Optional, Dict, Any, List
from pydantic import AliasChoices, BaseModel, Field, TypeAdapter

from constants import ALL_NODE_TYPES


# =============================================================================
# BASE MODELS
# =============================================================================

class BaseNodeFields(BaseModel):
    """Base class for all node field models."""
    model_config = {"extra": "allow", "populate_by_name": True}


# =============================================================================
# INPUT NODE MODELS
# =============================================================================

class InputVariable(BaseModel):
    """A variable read from the invocation input."""
    name: str = Field(min_length=1)
    type: str = "any"
    required: bool = False
    default: Any = None


class InputFields(BaseNodeFields):
    """Fields for the input node."""
    type: Literal["input"]
    variables: List[InputVariable] = Field(default_factory=list)


class ValidationRule(BaseModel):
    """A single inputValidation rule."""
    field: str = Field(min_length=1)
    required: bool = False
    type: Optional[str] = None
    min_length: Optional[int] = Field(default=None, alias="minLength", ge=0)
    max_length: Optional[int] = Field(default=None, alias="maxLength", ge=0)

    model_config = {"populate_by_name": True}


class InputValidationFields(BaseNodeFields):
    """Fields for the inputValidation node."""
    type: Literal["inputValidation"]
    rules: List[ValidationRule] = Field(default_factory=list)
    output: Optional[str] = None


# =============================================================================
# DATABASE NODE MODELS
# =============================================================================

class DbFindFields(BaseNodeFields):
    """Fields for the dbFind node."""
    type: Literal["dbFind"]
    collection: str = Field(min_length=1)
    filters: Union[Dict[str, Any], str] = Field(
        default_factory=dict, validation_alias=AliasChoices("filters", "filter"))
    find_type: Literal["one", "findOne", "many"] = Field(default="one", alias="findType")
    output: Optional[str] = None


class DbInsertFields(BaseNodeFields):
    """Fields for the dbInsert node."""
    type: Literal["dbInsert"]
    collection: str = Field(min_length=1)
    data: Union[Dict[str, Any], str]
    output: Optional[str] = None


class DbUpdateFields(BaseNodeFields):
    """Fields for the dbUpdate node."""
    type: Literal["dbUpdate"]
    collection: str = Field(min_length=1)
    filters: Union[Dict[str, Any], str] = Field(
        default_factory=dict, validation_alias=AliasChoices("filters", "filter"))
    data: Union[Dict[str, Any], str]
    output: Optional[str] = None


class DbDeleteFields(BaseNodeFields):
    """Fields for the dbDelete node."""
    type: Literal["dbDelete"]
    collection: str = Field(min_length=1)
    filters: Union[Dict[str, Any], str] = Field(
        default_factory=dict, validation_alias=AliasChoices("filters", "filter"))
    find_type: Literal["one", "findOne", "many"] = Field(default="one", alias="findType")
    output: Optional[str] = None


# =============================================================================
# AUTH NODE MODELS
# =============================================================================

class AuthMiddlewareFields(BaseNodeFields):
    """Fields for the authMiddleware node."""
    type: Literal["authMiddleware"]
    output: str = "currentUser"


class JwtGenerateFields(BaseNodeFields):
    """Fields for the jwtGenerate node."""
    type: Literal["jwtGenerate"]
    payload: Union[Dict[str, Any], str]
    expires_in: Union[str, int] = Field(default="7d", alias="expiresIn")
    algorithm: Literal["HS256", "HS384", "HS512"] = "HS256"
    output: Optional[str] = None


# =============================================================================
# MAIL / CONTROL / RESPONSE NODE MODELS
# =============================================================================

class EmailSendFields(BaseNodeFields):
    """Fields for the emailSend node."""
    type: Literal["emailSend"]
    to: str
    subject: str
    body: str
    sender: Optional[str] = Field(default=None, alias="from")


class DelayFields(BaseNodeFields):
    """Fields for the delay node."""
    type: Literal["delay"]
    seconds: float = Field(default=0.0, ge=0)


class ResponseFields(BaseNodeFields):
    """Fields for the terminal response node."""
    type: Literal["response"]
    status: int = Field(ge=100, le=599)
    body: Any


# =============================================================================
# DISCRIMINATED UNION - All Node Types
# =============================================================================

KnownNodeFields = Annotated[
    Union[
        InputFields, InputValidationFields,
        DbFindFields, DbInsertFields, DbUpdateFields, DbDeleteFields,
        AuthMiddlewareFields, JwtGenerateFields,
        EmailSendFields, DelayFields, ResponseFields,
    ],
    Field(discriminator="type")
]

FIELD_MODELS: Dict[str, type] = {
    "input": InputFields,
    "inputValidation": InputValidationFields,
    "dbFind": DbFindFields,
    "dbInsert": DbInsertFields,
    "dbUpdate": DbUpdateFields,
    "dbDelete": DbDeleteFields,
    "authMiddleware": AuthMiddlewareFields,
    "jwtGenerate": JwtGenerateFields,
    "emailSend": EmailSendFields,
    "delay": DelayFields,
    "response": ResponseFields,
}

NODE_DESCRIPTIONS: Dict[str, str] = {
    "input": "Reads user input variables declared in the variables array.",
    "inputValidation": "Validates variables with required/type/length rules.",
    "dbFind": "Finds document(s) in a collection.",
    "dbInsert": "Inserts a new document into a collection.",
    "dbUpdate": "Updates the first document matching the filters.",
    "dbDelete": "Deletes document(s) from a collection.",
    "authMiddleware": "Verifies the bearer token from the Authorization header.",
    "jwtGenerate": "Generates a signed JWT for the provided payload.",
    "emailSend": "Sends an email using the configured mail service.",
    "delay": "Waits a number of seconds before continuing.",
    "response": "Returns the response to the API caller. Always the final node.",
}


# =============================================================================
# VALIDATION HELPERS
# =============================================================================

# Created once at module level
_known_node_adapter = TypeAdapter(KnownNodeFields)


def validate_node_fields(node_type: str, fields: Dict[str, Any]) -> BaseNodeFields:
    """Validate node fields using the model for its type.

    For known node types, pydantic's ValidationError is raised when a required
    field is missing or has the wrong shape. Unknown node types fall back to
    BaseNodeFields so new tools can be stored before a handler exists.
    """
    fields_with_type = {**fields, "type": node_type}

    if node_type in ALL_NODE_TYPES:
        return _known_node_adapter.validate_python(fields_with_type)
    return BaseNodeFields(**fields_with_type)


def required_fields(node_type: str) -> List[str]:
    """Names of the fields a node type cannot run without (wire names)."""
    model = FIELD_MODELS.get(node_type)
    if model is None:
        return []
    names = []
    for name, info in model.model_fields.items():
        if name == "type" or not info.is_required():
            continue
        names.append(info.alias or name)
    return names


def get_tool_catalog() -> List[Dict[str, Any]]:
    """Describe every known node type with the JSON schema of its fields."""
    catalog = []
    for node_type, model in FIELD_MODELS.items():
        schema = model.model_json_schema(by_alias=True)
        schema.get("properties", {}).pop("type", None)
        if "required" in schema:
            schema["required"] = [r for r in schema["required"] if r != "type"]
        catalog.append({
            "type": node_type,
            "description": NODE_DESCRIPTIONS.get(node_type, ""),
            "requiredFields": required_fields(node_type),
            "fieldsSchema": schema,
        })
    return catalog
