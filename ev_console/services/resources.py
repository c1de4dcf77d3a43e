from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from ev_console.domain.models import Session
from ev_console.domain.roles import (
    ADMIN_ONLY,
    ADMIN_OR_STAFF,
    NO_ROLE,
    SERVICE_TEAM,
    Role,
    has_any_role,
)

FORMAT_TEXT = "text"
FORMAT_MONEY = "money"
FORMAT_DATE = "date"
FORMAT_DATETIME = "datetime"

APPOINTMENT_STATUSES = ("pending", "confirmed", "scheduled", "in-progress", "completed", "cancelled")
SERVICE_RECORD_STATUSES = ("pending", "in-progress", "completed", "cancelled")
WORKSHIFT_STATUSES = ("active", "completed", "cancelled")
SUBSCRIPTION_STATUSES = ("ACTIVE", "EXPIRED", "CANCELLED")
PAYMENT_TYPES = ("service_record", "subscription", "appointment")
ACCOUNT_ROLES = ("ADMIN", "STAFF", "TECHNICIAN", "CUSTOMER")


class FormValidationError(ValueError):
    def __init__(self, errors: dict[str, str]):
        super().__init__("; ".join(f"{key}: {value}" for key, value in errors.items()))
        self.errors = errors


@dataclass(frozen=True)
class FormField:
    name: str
    label: str
    kind: str = "text"
    required: bool = False
    choices: tuple[str, ...] = ()
    help_text: str = ""


@dataclass(frozen=True)
class Column:
    key: str
    label: str
    format: str = FORMAT_TEXT


@dataclass(frozen=True)
class ResourceDefinition:
    key: str
    label: str
    path: str
    list_key: str | None
    title_fields: tuple[str, ...]
    columns: tuple[Column, ...]
    search_fields: tuple[str, ...]
    form_fields: tuple[FormField, ...] = ()
    record_key: str | None = None
    id_field: str = "_id"
    update_method: str = "PATCH"
    view_roles: frozenset[Role] = ADMIN_ONLY
    create_roles: frozenset[Role] = NO_ROLE
    edit_roles: frozenset[Role] = NO_ROLE
    delete_roles: frozenset[Role] = NO_ROLE
    description: str = ""
    singular: str = ""

    @property
    def href(self) -> str:
        return f"/{self.key}"

    @property
    def item_label(self) -> str:
        return self.singular or self.label.rstrip("s")

    def record_id(self, record: Mapping[str, Any]) -> str:
        value = record.get(self.id_field)
        if value is None and self.id_field != "id":
            value = record.get("id")
        return "" if value is None else str(value)

    def record_title(self, record: Mapping[str, Any]) -> str:
        for name in self.title_fields:
            value = field_value(record, name)
            if value not in (None, ""):
                return str(value)
        return self.record_id(record)

    def can_view(self, session: Session | None) -> bool:
        return has_any_role(session, self.view_roles)

    def can_create(self, session: Session | None) -> bool:
        return bool(self.form_fields) and has_any_role(session, self.create_roles)

    def can_edit(self, session: Session | None) -> bool:
        return bool(self.form_fields) and has_any_role(session, self.edit_roles)

    def can_delete(self, session: Session | None) -> bool:
        return has_any_role(session, self.delete_roles)


def field_value(record: Mapping[str, Any] | None, dotted: str) -> Any:
    """Resolve ``a.b.c`` against nested dicts.

    Backend references are either an id string or a populated object, so a
    lookup that hits a string before the path ends yields that string.
    """
    current: Any = record
    for part in dotted.split("."):
        if isinstance(current, Mapping):
            current = current.get(part)
        else:
            return current
        if current is None:
            return None
    return current


def _coerce(form_field: FormField, raw: str) -> Any:
    if form_field.kind == "number":
        try:
            number = float(raw)
        except ValueError as exc:
            raise ValueError("must be a number") from exc
        return int(number) if number.is_integer() else number
    if form_field.choices and raw not in form_field.choices:
        raise ValueError(f"must be one of {', '.join(form_field.choices)}")
    return raw


def build_payload(
    fields: Iterable[FormField],
    values: Mapping[str, Any],
    *,
    partial: bool = False,
) -> dict[str, Any]:
    """Validate submitted form values and turn them into a request body.

    Blank optional fields are left out. With ``partial`` (edit dialogs) blank
    required fields are left out too, so untouched values stay as they are.
    """
    payload: dict[str, Any] = {}
    errors: dict[str, str] = {}
    for form_field in fields:
        raw = values.get(form_field.name)
        text = "" if raw is None else str(raw).strip()
        if not text:
            if form_field.required and not partial:
                errors[form_field.name] = f"{form_field.label} is required"
            continue
        try:
            payload[form_field.name] = _coerce(form_field, text)
        except ValueError as exc:
            errors[form_field.name] = f"{form_field.label} {exc}"
    if errors:
        raise FormValidationError(errors)
    return payload


def form_initial_values(definition: ResourceDefinition, record: Mapping[str, Any] | None) -> dict[str, str]:
    initial: dict[str, str] = {}
    for form_field in definition.form_fields:
        if record is None:
            initial[form_field.name] = ""
            continue
        value = record.get(form_field.name)
        if isinstance(value, Mapping):
            value = value.get("_id") or value.get("id")
        if value is None:
            initial[form_field.name] = ""
        elif form_field.kind == "date" and isinstance(value, str):
            initial[form_field.name] = value[:10]
        elif form_field.kind == "datetime-local" and isinstance(value, str):
            initial[form_field.name] = value[:16]
        else:
            initial[form_field.name] = str(value)
    return initial


RESOURCES: tuple[ResourceDefinition, ...] = (
    ResourceDefinition(
        key="appointments",
        label="Appointments",
        singular="Appointment",
        path="/appointments",
        list_key="appointments",
        title_fields=("customer_id.customerName", "vehicle_id.vehicleName"),
        columns=(
            Column("customer_id.customerName", "Customer"),
            Column("vehicle_id.vehicleName", "Vehicle"),
            Column("center_id.name", "Center"),
            Column("startTime", "Start", FORMAT_DATETIME),
            Column("endTime", "End", FORMAT_DATETIME),
            Column("status", "Status"),
        ),
        search_fields=("customer_id.customerName", "vehicle_id.vehicleName", "center_id.name", "status"),
        form_fields=(
            FormField("staffId", "Staff ID", required=True),
            FormField("customer_id", "Customer ID"),
            FormField("vehicle_id", "Vehicle ID", required=True),
            FormField("center_id", "Center ID", required=True),
            FormField("startTime", "Start time", kind="datetime-local", required=True),
            FormField("endTime", "End time", kind="datetime-local", required=True),
            FormField("status", "Status", kind="select", required=True, choices=APPOINTMENT_STATUSES),
        ),
        update_method="PUT",
        view_roles=SERVICE_TEAM,
        create_roles=ADMIN_OR_STAFF,
        edit_roles=ADMIN_OR_STAFF,
        delete_roles=ADMIN_ONLY,
        description="Appointment intake and scheduling.",
    ),
    ResourceDefinition(
        key="customers",
        label="Customers",
        path="/customers",
        list_key="customers",
        title_fields=("customerName",),
        columns=(
            Column("customerName", "Name"),
            Column("userId.phone", "Phone"),
            Column("address", "Address"),
            Column("dateOfBirth", "Date of birth", FORMAT_DATE),
            Column("createdAt", "Registered", FORMAT_DATE),
        ),
        search_fields=("customerName", "userId.phone", "address"),
        form_fields=(
            FormField("customerName", "Name", required=True),
            FormField("address", "Address"),
            FormField("dateOfBirth", "Date of birth", kind="date"),
        ),
        view_roles=ADMIN_OR_STAFF,
        edit_roles=ADMIN_ONLY,
        delete_roles=ADMIN_ONLY,
        description="Registered customers.",
    ),
    ResourceDefinition(
        key="vehicles",
        label="Vehicles",
        path="/vehicles",
        list_key="vehicles",
        title_fields=("vehicleName", "plateNumber"),
        columns=(
            Column("vehicleName", "Vehicle"),
            Column("model", "Model"),
            Column("VIN", "VIN"),
            Column("plateNumber", "Plate"),
            Column("customerId.customerName", "Owner"),
            Column("last_service_date", "Last service", FORMAT_DATE),
        ),
        search_fields=("vehicleName", "model", "VIN", "plateNumber", "customerId.customerName"),
        form_fields=(
            FormField("vehicleName", "Vehicle name", required=True),
            FormField("model", "Model", required=True),
            FormField("year", "Year", kind="number"),
            FormField("VIN", "VIN", required=True),
            FormField("plateNumber", "Plate number"),
            FormField("mileage", "Mileage", kind="number"),
            FormField("price", "Price", kind="number"),
            FormField("customerId", "Customer ID"),
        ),
        view_roles=ADMIN_OR_STAFF,
        create_roles=ADMIN_OR_STAFF,
        edit_roles=ADMIN_OR_STAFF,
        delete_roles=ADMIN_ONLY,
        description="Customer vehicles.",
    ),
    ResourceDefinition(
        key="auto-parts",
        label="Auto parts",
        singular="Auto part",
        path="/auto-parts",
        list_key="parts",
        title_fields=("name",),
        columns=(
            Column("name", "Name"),
            Column("cost_price", "Cost price", FORMAT_MONEY),
            Column("selling_price", "Selling price", FORMAT_MONEY),
            Column("warranty_time", "Warranty (days)"),
        ),
        search_fields=("name",),
        form_fields=(
            FormField("name", "Name", required=True),
            FormField("cost_price", "Cost price", kind="number", required=True),
            FormField("selling_price", "Selling price", kind="number", required=True),
            FormField("warranty_time", "Warranty (days)", kind="number", required=True),
        ),
        update_method="PUT",
        view_roles=SERVICE_TEAM,
        create_roles=ADMIN_ONLY,
        edit_roles=ADMIN_ONLY,
        delete_roles=ADMIN_ONLY,
        description="Parts catalogue.",
    ),
    ResourceDefinition(
        key="center-auto-parts",
        label="Center inventory",
        singular="Stock line",
        path="/center-auto-parts",
        list_key="items",
        title_fields=("part_id.name", "part_id"),
        columns=(
            Column("center_id.name", "Center"),
            Column("part_id.name", "Part"),
            Column("quantity", "Quantity"),
            Column("min_stock", "Min stock"),
            Column("recommended_min_stock", "Recommended min"),
            Column("last_forecast_date", "Last forecast", FORMAT_DATE),
        ),
        search_fields=("center_id.name", "part_id.name"),
        form_fields=(
            FormField("center_id", "Center ID", required=True),
            FormField("part_id", "Part ID", required=True),
            FormField("quantity", "Quantity", kind="number", required=True),
            FormField("min_stock", "Min stock", kind="number", required=True),
            FormField("recommended_min_stock", "Recommended min stock", kind="number", required=True),
        ),
        update_method="PUT",
        view_roles=SERVICE_TEAM,
        create_roles=ADMIN_OR_STAFF,
        edit_roles=ADMIN_OR_STAFF,
        delete_roles=ADMIN_OR_STAFF,
        description="Part stock held by each center.",
    ),
    ResourceDefinition(
        key="centers",
        label="Centers",
        singular="Center",
        path="/centers",
        list_key="centers",
        title_fields=("name",),
        columns=(
            Column("name", "Name"),
            Column("address", "Address"),
            Column("phone", "Phone"),
        ),
        search_fields=("name", "address", "phone"),
        form_fields=(
            FormField("name", "Name", required=True),
            FormField("address", "Address", required=True),
            FormField("phone", "Phone", kind="tel", required=True),
        ),
        update_method="PUT",
        view_roles=ADMIN_ONLY,
        create_roles=ADMIN_ONLY,
        edit_roles=ADMIN_ONLY,
        delete_roles=ADMIN_ONLY,
        description="Service centers.",
    ),
    ResourceDefinition(
        key="service-packages",
        label="Service packages",
        singular="Service package",
        path="/service-packages",
        list_key=None,
        title_fields=("name",),
        columns=(
            Column("name", "Name"),
            Column("price", "Price", FORMAT_MONEY),
            Column("duration", "Duration (months)"),
            Column("km_interval", "Km interval"),
            Column("service_interval_days", "Interval (days)"),
        ),
        search_fields=("name", "description"),
        form_fields=(
            FormField("name", "Name", required=True),
            FormField("description", "Description", kind="textarea", required=True),
            FormField("price", "Price", kind="number", required=True),
            FormField("duration", "Duration (months)", kind="number", required=True),
            FormField("km_interval", "Km interval", kind="number", required=True),
            FormField("service_interval_days", "Interval (days)", kind="number", required=True),
        ),
        view_roles=ADMIN_OR_STAFF,
        create_roles=ADMIN_ONLY,
        edit_roles=ADMIN_ONLY,
        delete_roles=ADMIN_ONLY,
        description="Maintenance packages offered to subscribers.",
    ),
    ResourceDefinition(
        key="service-records",
        label="Service records",
        singular="Service record",
        path="/service-records",
        list_key="records",
        title_fields=("description",),
        columns=(
            Column("technician_id.name", "Technician"),
            Column("description", "Description"),
            Column("start_time", "Start", FORMAT_DATETIME),
            Column("end_time", "End", FORMAT_DATETIME),
            Column("status", "Status"),
        ),
        search_fields=("technician_id.name", "description", "status"),
        form_fields=(
            FormField("appointment_id", "Appointment ID"),
            FormField("technician_id", "Technician ID", required=True),
            FormField("start_time", "Start time", kind="datetime-local", required=True),
            FormField("end_time", "End time", kind="datetime-local", required=True),
            FormField("description", "Description", kind="textarea", required=True),
            FormField("status", "Status", kind="select", required=True, choices=SERVICE_RECORD_STATUSES),
        ),
        update_method="PUT",
        view_roles=SERVICE_TEAM,
        create_roles=ADMIN_OR_STAFF,
        edit_roles=SERVICE_TEAM,
        delete_roles=ADMIN_ONLY,
        description="Work performed on vehicles.",
    ),
    ResourceDefinition(
        key="service-checklists",
        label="Service checklists",
        singular="Checklist item",
        path="/service-checklists",
        list_key="checklists",
        title_fields=("name",),
        columns=(
            Column("order", "Order"),
            Column("name", "Name"),
        ),
        search_fields=("name",),
        form_fields=(
            FormField("name", "Name", required=True),
            FormField("order", "Order", kind="number", required=True),
        ),
        view_roles=SERVICE_TEAM,
        create_roles=ADMIN_ONLY,
        edit_roles=ADMIN_ONLY,
        delete_roles=ADMIN_ONLY,
        description="Inspection checklist templates.",
    ),
    ResourceDefinition(
        key="payments",
        label="Payments",
        singular="Payment",
        path="/payments",
        list_key="payments",
        record_key="payment",
        title_fields=("order_code", "description"),
        columns=(
            Column("order_code", "Order code"),
            Column("customer_id.customerName", "Customer"),
            Column("amount", "Amount", FORMAT_MONEY),
            Column("payment_type", "Type"),
            Column("status", "Status"),
            Column("createdAt", "Created", FORMAT_DATETIME),
        ),
        search_fields=("order_code", "customer_id.customerName", "description", "status"),
        form_fields=(
            FormField("amount", "Amount", kind="number", required=True),
            FormField("payment_type", "Payment type", kind="select", required=True, choices=PAYMENT_TYPES),
            FormField("service_record_id", "Service record ID"),
            FormField("subscription_id", "Subscription ID"),
            FormField("appointment_id", "Appointment ID"),
            FormField("customer_id", "Customer ID"),
            FormField("description", "Description", kind="textarea"),
        ),
        view_roles=ADMIN_OR_STAFF,
        create_roles=ADMIN_OR_STAFF,
        description="Invoices and payment links.",
    ),
    ResourceDefinition(
        key="users",
        label="Users",
        singular="User",
        path="/users",
        list_key="users",
        title_fields=("email", "phone"),
        columns=(
            Column("email", "Email"),
            Column("phone", "Phone"),
            Column("role", "Role"),
            Column("createdAt", "Created", FORMAT_DATE),
        ),
        search_fields=("email", "phone", "role"),
        form_fields=(
            FormField("email", "Email", kind="email"),
            FormField("role", "Role", kind="select", choices=ACCOUNT_ROLES),
            FormField("password", "New password", kind="password", help_text="Leave blank to keep"),
        ),
        view_roles=ADMIN_ONLY,
        edit_roles=ADMIN_ONLY,
        delete_roles=ADMIN_ONLY,
        description="Login accounts.",
    ),
    ResourceDefinition(
        key="staff",
        label="Staff",
        singular="Staff member",
        path="/system-users",
        list_key="systemUsers",
        title_fields=("name",),
        columns=(
            Column("name", "Name"),
            Column("userId.email", "Email"),
            Column("userId.role", "Role"),
            Column("certification", "Certification"),
            Column("dateOfBirth", "Date of birth", FORMAT_DATE),
        ),
        search_fields=("name", "userId.email", "userId.role", "certification"),
        form_fields=(
            FormField("name", "Name", required=True),
            FormField("dateOfBirth", "Date of birth", kind="date"),
            FormField("certification", "Certification"),
            FormField("centerId", "Center ID"),
        ),
        view_roles=ADMIN_ONLY,
        edit_roles=ADMIN_ONLY,
        delete_roles=ADMIN_ONLY,
        description="Staff and technician profiles.",
    ),
    ResourceDefinition(
        key="workshifts",
        label="Workshifts",
        singular="Workshift",
        path="/workshifts",
        list_key=None,
        title_fields=("shift_id",),
        columns=(
            Column("shift_id", "Shift"),
            Column("shift_date", "Date", FORMAT_DATE),
            Column("start_time", "Start"),
            Column("end_time", "End"),
            Column("status", "Status"),
        ),
        search_fields=("shift_id", "status", "center_id"),
        form_fields=(
            FormField("shift_id", "Shift ID", required=True),
            FormField("shift_date", "Date", kind="date", required=True),
            FormField("start_time", "Start (HH:mm)", kind="time", required=True),
            FormField("end_time", "End (HH:mm)", kind="time", required=True),
            FormField("status", "Status", kind="select", required=True, choices=WORKSHIFT_STATUSES),
            FormField("center_id", "Center ID", required=True),
        ),
        update_method="PUT",
        view_roles=ADMIN_OR_STAFF,
        create_roles=ADMIN_ONLY,
        edit_roles=ADMIN_ONLY,
        delete_roles=ADMIN_ONLY,
        description="Center work shifts.",
    ),
    ResourceDefinition(
        key="shift-assignments",
        label="Shift assignments",
        singular="Shift assignment",
        path="/shift-assignments",
        list_key=None,
        title_fields=("system_user_id.name", "system_user_id"),
        columns=(
            Column("system_user_id.name", "Staff member"),
            Column("workshift_id.shift_date", "Date", FORMAT_DATE),
            Column("workshift_id.start_time", "Start"),
            Column("workshift_id.end_time", "End"),
            Column("workshift_id.center_id", "Center"),
        ),
        search_fields=("system_user_id.name", "workshift_id.shift_id", "workshift_id.shift_date"),
        view_roles=ADMIN_OR_STAFF,
        delete_roles=ADMIN_OR_STAFF,
        description="Technicians assigned to work shifts.",
    ),
    ResourceDefinition(
        key="vehicle-subscriptions",
        label="Vehicle subscriptions",
        singular="Subscription",
        path="/vehicle-subscriptions",
        list_key=None,
        title_fields=("vehicleId.vehicleName", "package_id.name"),
        columns=(
            Column("vehicleId.vehicleName", "Vehicle"),
            Column("package_id.name", "Package"),
            Column("start_date", "Start", FORMAT_DATE),
            Column("end_date", "End", FORMAT_DATE),
            Column("status", "Status"),
        ),
        search_fields=("vehicleId.vehicleName", "package_id.name", "status"),
        form_fields=(
            FormField("vehicleId", "Vehicle ID", required=True),
            FormField("package_id", "Package ID", required=True),
            FormField("start_date", "Start date", kind="date", required=True),
            FormField("status", "Status", kind="select", required=True, choices=SUBSCRIPTION_STATUSES),
        ),
        view_roles=ADMIN_OR_STAFF,
        create_roles=ADMIN_OR_STAFF,
        edit_roles=ADMIN_OR_STAFF,
        delete_roles=ADMIN_ONLY,
        description="Package subscriptions per vehicle.",
    ),
)

_BY_KEY: dict[str, ResourceDefinition] = {item.key: item for item in RESOURCES}


class UnknownResourceError(LookupError):
    pass


def get_resource(key: str) -> ResourceDefinition:
    try:
        return _BY_KEY[key]
    except KeyError as exc:
        raise UnknownResourceError(key) from exc


def visible_resources(session: Session | None) -> list[ResourceDefinition]:
    return [item for item in RESOURCES if item.can_view(session)]

