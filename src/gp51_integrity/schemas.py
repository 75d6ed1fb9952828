"""Validation schemas for payloads exchanged with the GP51 tracking platform.

Each validator takes untyped input and returns a ValidationResult instead of
raising. A business-rule layer adds semantic checks on top of structural
validation for vehicles, users and positions.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

BusinessRuleKind = Literal["vehicle", "user", "position"]


def _coerce_device_id(value: Any) -> Any:
    # GP51 returns device ids as numbers from some endpoints and strings from others.
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


DeviceId = Annotated[str, BeforeValidator(_coerce_device_id)]


class GP51BaseResponse(BaseModel):
    status: int
    cause: str | None = None


class GP51AuthResponse(GP51BaseResponse):
    token: str | None = None
    message: str | None = None


class GP51Vehicle(BaseModel):
    """A GP51 device as stored in a vehicle's metadata snapshot."""

    model_config = ConfigDict(extra="allow")

    deviceid: DeviceId
    devicename: str
    devicetype: int
    groupid: int | None = None
    username: str | None = None
    devicestatus: int | None = None
    overduetime: str | int | None = None
    timezone: float | None = None
    icontype: int | None = None
    offline_delay: int | None = None
    lastupdate: str | int | None = None
    lat: float | None = None
    lng: float | None = None
    speed: float | None = None
    course: float | None = None
    acc: int | None = None
    oil: float | None = None
    temperature: float | None = None
    gsm: int | None = None
    gps: int | None = None


class GP51VehiclesResponse(GP51BaseResponse):
    devicelist: list[GP51Vehicle] | None = None


class GP51Position(BaseModel):
    deviceid: DeviceId
    latitude: float
    longitude: float
    speed: float
    course: float
    timestamp: str
    acc: int | None = None
    gsm: int | None = None
    gps: int | None = None
    oil: float | None = None
    temperature: float | None = None


class GP51User(BaseModel):
    username: str
    creater: str
    showname: str
    usertype: Literal[1, 2, 3, 4]
    multilogin: Literal[0, 1]
    companyname: str | None = None
    companyaddr: str | None = None
    cardname: str | None = None
    email: str | None = None
    wechat: str | None = None
    phone: str | None = None
    qq: str | None = None

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str | None) -> str | None:
        if value is not None and not _EMAIL_RE.match(value):
            raise ValueError("Invalid email")
        return value


class GP51DeviceType(BaseModel):
    defaultidlength: int
    defaultofflinedelay: int
    devicetypeid: int
    functions: int
    functionslong: int
    price: float
    price3: float
    price5: float
    price10: float
    remark: str
    remarken: str
    typecode: str
    typename: str


class ValidationIssue(BaseModel):
    """One structural or business-rule problem with an input payload."""

    field: str
    message: str
    code: str
    received_value: Any = None


class ValidationResult(BaseModel):
    """Outcome of validating a payload. ``data`` is set only on success."""

    success: bool
    data: Any = None
    errors: list[ValidationIssue] = Field(default_factory=list)
    raw_data: Any = None


class VehicleBatchResult(BaseModel):
    valid: list[GP51Vehicle] = Field(default_factory=list)
    invalid: list[dict[str, Any]] = Field(default_factory=list)


class GP51ResponseValidator:
    """Validates GP51 payloads against the schemas above."""

    def validate_auth_response(self, data: Any) -> ValidationResult:
        return self._validate_with_schema(GP51AuthResponse, data, "AuthResponse")

    def validate_vehicles_response(self, data: Any) -> ValidationResult:
        return self._validate_with_schema(GP51VehiclesResponse, data, "VehiclesResponse")

    def validate_vehicle(self, data: Any) -> ValidationResult:
        return self._validate_with_schema(GP51Vehicle, data, "Vehicle")

    def validate_position(self, data: Any) -> ValidationResult:
        return self._validate_with_schema(GP51Position, data, "Position")

    def validate_user(self, data: Any) -> ValidationResult:
        return self._validate_with_schema(GP51User, data, "User")

    def validate_device_type(self, data: Any) -> ValidationResult:
        return self._validate_with_schema(GP51DeviceType, data, "DeviceType")

    def _validate_with_schema(self, schema: type[BaseModel], data: Any, context: str) -> ValidationResult:
        try:
            parsed = schema.model_validate(data)
        except PydanticValidationError as exc:
            errors = [
                ValidationIssue(
                    field=".".join(str(part) for part in err["loc"]) or "root",
                    message=err["msg"],
                    code=err["type"],
                    received_value=err.get("input"),
                )
                for err in exc.errors()
            ]
            logger.debug("GP51 %s validation failed: %s", context, [e.code for e in errors])
            return ValidationResult(success=False, errors=errors, raw_data=data)
        except Exception as exc:
            logger.error("GP51 %s validation raised: %s", context, exc)
            return ValidationResult(
                success=False,
                errors=[ValidationIssue(
                    field="root",
                    message=f"Validation error: {exc}",
                    code="validation_exception",
                )],
                raw_data=data,
            )
        return ValidationResult(success=True, data=parsed)

    def validate_vehicle_array(self, vehicles: list[Any]) -> VehicleBatchResult:
        """Partition vehicles into valid (typed) and invalid (original + errors).

        Every element is evaluated; a failure never short-circuits the batch.
        """
        batch = VehicleBatchResult()
        for vehicle in vehicles:
            result = self.validate_vehicle(vehicle)
            if result.success and result.data is not None:
                batch.valid.append(result.data)
            else:
                batch.invalid.append({"data": vehicle, "errors": result.errors})
        return batch

    def validate_with_business_rules(self, data: Any, kind: BusinessRuleKind) -> ValidationResult:
        """Structural validation followed by semantic rules for ``kind``.

        Raises:
            ValueError: If ``kind`` is not a supported payload type.
        """
        base = self._base_validation(data, kind)
        if not base.success:
            return base

        business_errors = self._apply_business_rules(base.data, kind)
        if business_errors:
            return ValidationResult(
                success=False,
                errors=[*base.errors, *business_errors],
                raw_data=data,
            )
        return base

    def _base_validation(self, data: Any, kind: str) -> ValidationResult:
        if kind == "vehicle":
            return self.validate_vehicle(data)
        if kind == "user":
            return self.validate_user(data)
        if kind == "position":
            return self.validate_position(data)
        raise ValueError(f"Unknown validation type: {kind}")

    def _apply_business_rules(self, data: Any, kind: str) -> list[ValidationIssue]:
        errors: list[ValidationIssue] = []

        if kind == "vehicle":
            if data.lat == 0 and data.lng == 0:
                errors.append(ValidationIssue(
                    field="coordinates",
                    message="Vehicle coordinates cannot both be zero",
                    code="invalid_coordinates",
                ))
            if data.speed is not None and not 0 <= data.speed <= 300:
                errors.append(ValidationIssue(
                    field="speed",
                    message="Vehicle speed must be between 0 and 300 km/h",
                    code="invalid_speed",
                    received_value=data.speed,
                ))

        elif kind == "user":
            if data.username and len(data.username) < 3:
                errors.append(ValidationIssue(
                    field="username",
                    message="Username must be at least 3 characters long",
                    code="username_too_short",
                    received_value=data.username,
                ))

        elif kind == "position":
            if abs(data.latitude) > 90 or abs(data.longitude) > 180:
                errors.append(ValidationIssue(
                    field="coordinates",
                    message="Invalid GPS coordinates",
                    code="invalid_gps",
                ))

        return errors


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO string or epoch seconds/milliseconds into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return parse_timestamp(int(text))
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


def metadata_last_update(metadata: Any) -> datetime | None:
    """Return the most recent update timestamp recorded in a metadata blob.

    Anything other than a non-empty mapping has no timestamp.
    """
    if not metadata or not isinstance(metadata, dict):
        return None
    for key in ("lastupdate", "updatetime", "last_update"):
        stamp = parse_timestamp(metadata.get(key))
        if stamp is not None:
            return stamp
    return None
