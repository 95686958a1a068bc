from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from workhub.context import bind_field_scope, get_correlation_id
from workhub.core.auth import MANAGE_PERMISSION, AuthUser, get_current_user, require_permission
from workhub.core.database import get_db
from workhub.custom_fields.errors import (
    CustomFieldError,
    CyclicDependency,
    DefinitionInUse,
    DefinitionInvalid,
    DefinitionNotFound,
    FieldValueInvalid,
)
from workhub.custom_fields.schemas import (
    EntityFieldState,
    EntityInitializeRequest,
    EntityValuesUpdate,
    FieldDefinition,
    FieldScope,
    FieldTypeRead,
    RelationshipUpdate,
    UsageResult,
)
from workhub.custom_fields.service import custom_field_service

router = APIRouter(prefix="/api/custom-fields/scopes/{scope_kind}/{scope_id}", tags=["custom_fields"])
catalog_router = APIRouter(prefix="/api/custom-fields", tags=["custom_fields"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def custom_field_error_response(request: Request, exc: CustomFieldError, *, code: str) -> JSONResponse:
    if isinstance(exc, DefinitionNotFound):
        return error_response(
            request,
            status_code=status.HTTP_404_NOT_FOUND,
            code=code,
            message=str(exc),
            details={"reason": "not_found", "field_id": exc.definition_id},
        )
    if isinstance(exc, DefinitionInUse):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(exc, (DefinitionInvalid, CyclicDependency, FieldValueInvalid)):
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    else:
        status_code = status.HTTP_400_BAD_REQUEST
    details = exc.to_dict() if hasattr(exc, "to_dict") else None
    return error_response(request, status_code=status_code, code=code, message=str(exc), details=details)


def resolve_scope(scope_kind: str, scope_id: str) -> FieldScope:
    if scope_kind == "projects":
        return FieldScope.for_project(scope_id)
    if scope_kind == "workspaces":
        return FieldScope.for_workspace(scope_id)
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown scope kind: {scope_kind}")


@router.get("/definitions", response_model=list[FieldDefinition])
def list_definitions(
    request: Request,
    scope_kind: str,
    scope_id: str,
    context: list[str] | None = Query(default=None),
    db: Session = Depends(get_db),
) -> list[FieldDefinition] | JSONResponse:
    try:
        scope = resolve_scope(scope_kind, scope_id)
        with bind_field_scope(scope.label()):
            return custom_field_service.list_definitions(db, scope, context)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="custom_fields_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except CustomFieldError as exc:
        return custom_field_error_response(request, exc, code="custom_fields_list_failed")


@router.post("/definitions", response_model=FieldDefinition, status_code=status.HTTP_201_CREATED)
def create_definition(
    request: Request,
    scope_kind: str,
    scope_id: str,
    raw: Any = Body(...),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> FieldDefinition | JSONResponse:
    try:
        scope = resolve_scope(scope_kind, scope_id)
        require_permission(user, MANAGE_PERMISSION)
        with bind_field_scope(scope.label()):
            return custom_field_service.upsert_definition(db, scope, raw, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="custom_fields_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except CustomFieldError as exc:
        return custom_field_error_response(request, exc, code="custom_fields_create_failed")


@router.put("/definitions/{definition_id}", response_model=FieldDefinition)
def update_definition(
    request: Request,
    scope_kind: str,
    scope_id: str,
    definition_id: str,
    raw: Any = Body(...),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> FieldDefinition | JSONResponse:
    try:
        scope = resolve_scope(scope_kind, scope_id)
        require_permission(user, MANAGE_PERMISSION)
        if not isinstance(raw, dict):
            raise DefinitionInvalid("not_an_object", field_id=definition_id)
        with bind_field_scope(scope.label()):
            return custom_field_service.upsert_definition(db, scope, {**raw, "id": definition_id}, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="custom_fields_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except CustomFieldError as exc:
        return custom_field_error_response(request, exc, code="custom_fields_update_failed")


@router.delete("/definitions/{definition_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_definition(
    request: Request,
    scope_kind: str,
    scope_id: str,
    definition_id: str,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> Response:
    try:
        scope = resolve_scope(scope_kind, scope_id)
        require_permission(user, MANAGE_PERMISSION)
        with bind_field_scope(scope.label()):
            custom_field_service.delete_definition(db, scope, definition_id, user)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="custom_fields_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except CustomFieldError as exc:
        return custom_field_error_response(request, exc, code="custom_fields_delete_failed")


@router.post("/definitions/{definition_id}/reconfirm", response_model=FieldDefinition)
def reconfirm_definition(
    request: Request,
    scope_kind: str,
    scope_id: str,
    definition_id: str,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> FieldDefinition | JSONResponse:
    try:
        scope = resolve_scope(scope_kind, scope_id)
        require_permission(user, MANAGE_PERMISSION)
        with bind_field_scope(scope.label()):
            return custom_field_service.reconfirm_definition(db, scope, definition_id, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="custom_fields_reconfirm_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except CustomFieldError as exc:
        return custom_field_error_response(request, exc, code="custom_fields_reconfirm_failed")


@router.get("/usage", response_model=UsageResult)
def usage(
    request: Request,
    scope_kind: str,
    scope_id: str,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> UsageResult | JSONResponse:
    try:
        scope = resolve_scope(scope_kind, scope_id)
        require_permission(user, MANAGE_PERMISSION)
        with bind_field_scope(scope.label()):
            return custom_field_service.usage(db, scope)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="custom_fields_usage_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except CustomFieldError as exc:
        return custom_field_error_response(request, exc, code="custom_fields_usage_failed")


@router.post("/entities/{entity_id}", response_model=EntityFieldState, status_code=status.HTTP_201_CREATED)
def initialize_entity(
    request: Request,
    scope_kind: str,
    scope_id: str,
    entity_id: str,
    dto: EntityInitializeRequest | None = None,
    db: Session = Depends(get_db),
) -> EntityFieldState | JSONResponse:
    try:
        scope = resolve_scope(scope_kind, scope_id)
        overrides = dto.values if dto is not None else {}
        with bind_field_scope(scope.label()):
            return custom_field_service.initialize_entity(db, scope, entity_id, overrides)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="custom_fields_entity_initialize_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except CustomFieldError as exc:
        return custom_field_error_response(request, exc, code="custom_fields_entity_initialize_failed")


@router.get("/entities/{entity_id}", response_model=EntityFieldState)
def get_entity_fields(
    request: Request,
    scope_kind: str,
    scope_id: str,
    entity_id: str,
    db: Session = Depends(get_db),
) -> EntityFieldState | JSONResponse:
    try:
        scope = resolve_scope(scope_kind, scope_id)
        with bind_field_scope(scope.label()):
            return custom_field_service.get_entity_fields(db, scope, entity_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="custom_fields_entity_read_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except CustomFieldError as exc:
        return custom_field_error_response(request, exc, code="custom_fields_entity_read_failed")


@router.patch("/entities/{entity_id}/values", response_model=EntityFieldState)
def set_entity_values(
    request: Request,
    scope_kind: str,
    scope_id: str,
    entity_id: str,
    dto: EntityValuesUpdate,
    db: Session = Depends(get_db),
) -> EntityFieldState | JSONResponse:
    try:
        scope = resolve_scope(scope_kind, scope_id)
        with bind_field_scope(scope.label()):
            return custom_field_service.set_entity_values(db, scope, entity_id, dto.values)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="custom_fields_entity_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except CustomFieldError as exc:
        return custom_field_error_response(request, exc, code="custom_fields_entity_update_failed")


@router.put("/entities/{entity_id}/relationships/{relationship_name}", response_model=EntityFieldState)
def set_relationship(
    request: Request,
    scope_kind: str,
    scope_id: str,
    entity_id: str,
    relationship_name: str,
    dto: RelationshipUpdate,
    db: Session = Depends(get_db),
) -> EntityFieldState | JSONResponse:
    try:
        scope = resolve_scope(scope_kind, scope_id)
        with bind_field_scope(scope.label()):
            return custom_field_service.set_relationship(db, scope, entity_id, relationship_name, dto.related_entity_ids)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="custom_fields_relationship_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except CustomFieldError as exc:
        return custom_field_error_response(request, exc, code="custom_fields_relationship_update_failed")


@router.post("/entities/{entity_id}/refresh", response_model=EntityFieldState)
def refresh_entity(
    request: Request,
    scope_kind: str,
    scope_id: str,
    entity_id: str,
    db: Session = Depends(get_db),
) -> EntityFieldState | JSONResponse:
    try:
        scope = resolve_scope(scope_kind, scope_id)
        with bind_field_scope(scope.label()):
            return custom_field_service.refresh_entity(db, scope, entity_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="custom_fields_entity_refresh_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except CustomFieldError as exc:
        return custom_field_error_response(request, exc, code="custom_fields_entity_refresh_failed")


@router.delete("/entities/{entity_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_entity(
    request: Request,
    scope_kind: str,
    scope_id: str,
    entity_id: str,
    db: Session = Depends(get_db),
) -> Response:
    try:
        scope = resolve_scope(scope_kind, scope_id)
        with bind_field_scope(scope.label()):
            custom_field_service.delete_entity(db, entity_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="custom_fields_entity_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except CustomFieldError as exc:
        return custom_field_error_response(request, exc, code="custom_fields_entity_delete_failed")


@catalog_router.get("/field-types", response_model=list[FieldTypeRead])
def list_field_types() -> list[FieldTypeRead]:
    return custom_field_service.field_types()
