"""
User Management API Routes

This module provides REST endpoints for managing enrolled users:
- GET /users: List all enrolled users
- GET /users/{user_id}: Get user details
- DELETE /users/{user_id}: Delete an enrolled user
- GET /export: Download every identity as JSON
- POST /import: Upload identities as JSON

Changes to storage are followed by a reload of the match index.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.deps import get_match_index, get_store
from api.schemas import (
    DeleteUserResponse,
    ImportResponse,
    UserInfo,
    UserListResponse,
)
from faceid.errors import InvalidImportFormatError, PersistenceError
from faceid.gallery_io import export_gallery, import_gallery
from faceid.matching import MatchIndex
from faceid.template_store import TemplateStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["users"])


@router.get("/users", response_model=UserListResponse)
async def list_users(store: TemplateStore = Depends(get_store)):
    """List all enrolled users, newest first."""
    users = store.list_users()

    return UserListResponse(
        users=[UserInfo(**u) for u in users],
        total=len(users),
    )


@router.get("/users/{user_id}", response_model=UserInfo)
async def get_user(user_id: str, store: TemplateStore = Depends(get_store)):
    """
    Get information about a specific user.

    Raises:
        404: If the user is not found.
    """
    user = store.get_user_info(user_id)

    if user is None:
        raise HTTPException(status_code=404, detail=f"User {user_id} not found")

    return UserInfo(**user)


@router.delete("/users/{user_id}", response_model=DeleteUserResponse)
async def delete_user(
    user_id: str,
    store: TemplateStore = Depends(get_store),
    match_index: MatchIndex = Depends(get_match_index),
):
    """
    Delete an enrolled user and their template.

    Raises:
        404: If the user is not found.
    """
    if not store.delete_user(user_id):
        raise HTTPException(status_code=404, detail=f"User {user_id} not found")

    match_index.load_from_storage(store)

    return DeleteUserResponse(
        success=True,
        user_id=user_id,
        message=f"User {user_id} deleted successfully",
    )


@router.get("/export")
async def export_users(store: TemplateStore = Depends(get_store)):
    """Every enrolled identity in the JSON exchange format."""
    return Response(
        content=export_gallery(store),
        media_type="application/json",
        headers={"Content-Disposition": 'attachment; filename="face_registrations.json"'},
    )


@router.post("/import", response_model=ImportResponse)
async def import_users(
    request: Request,
    store: TemplateStore = Depends(get_store),
    match_index: MatchIndex = Depends(get_match_index),
):
    """
    Import identities from a JSON exchange-format body.

    Not atomic: records written before a failure stay imported and the
    error detail reports how many.

    Raises:
        400: If the body or one of its records is malformed.
        500: If storage fails partway through.
    """
    body = await request.body()

    try:
        count = import_gallery(store, body)
    except InvalidImportFormatError as e:
        if e.imported:
            match_index.load_from_storage(store)
        raise HTTPException(status_code=400, detail={"error": str(e), "imported": e.imported})
    except PersistenceError as e:
        if e.imported:
            _reload_after_partial_import(store, match_index)
        raise HTTPException(status_code=500, detail={"error": str(e), "imported": e.imported or 0})

    match_index.load_from_storage(store)
    return ImportResponse(success=True, count=count)


def _reload_after_partial_import(store: TemplateStore, match_index: MatchIndex) -> None:
    try:
        match_index.load_from_storage(store)
    except PersistenceError as e:
        logger.error(f"Match index not refreshed after partial import: {e}")
