from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import get_current_owner
from .database import get_db
from .errors import ListAPIError
from .lists import ListService, list_service
from .results import Applied, Failed, ListResult, Queued

router = APIRouter(
    prefix="/api/lists",
    tags=["lists"],
    dependencies=[Depends(get_current_owner)],
)

FAILURE_STATUS = {
    "session_expired": 401,
    "unauthorized": 403,
    "not_found": 404,
    "duplicate_movie": 409,
    "validation_error": 422,
}


def get_list_service() -> ListService:
    return list_service


def result_response(result: ListResult) -> JSONResponse:
    if isinstance(result, Applied):
        return JSONResponse(status_code=200, content=result.to_dict())
    if isinstance(result, Queued):
        return JSONResponse(status_code=202, content=result.to_dict())
    if isinstance(result, Failed):
        return JSONResponse(status_code=FAILURE_STATUS.get(result.reason, 400), content=result.to_dict())
    raise TypeError(f"Unknown list result: {result!r}")


def raise_api_error(exc: ListAPIError):
    if exc.transient:
        raise HTTPException(status_code=503, detail={"reason": exc.reason, "message": exc.message})
    raise HTTPException(
        status_code=FAILURE_STATUS.get(exc.reason, 502),
        detail={"reason": exc.reason, "message": exc.message},
    )


class CreateListRequest(BaseModel):
    name: str = Field(max_length=500)
    description: str = Field(default="", max_length=2000)
    is_public: bool = False


class UpdateListRequest(BaseModel):
    name: str | None = Field(default=None, max_length=500)
    description: str | None = Field(default=None, max_length=2000)
    is_public: bool | None = None


class PrivacyRequest(BaseModel):
    is_public: bool


class AddMovieRequest(BaseModel):
    movie_id: int = Field(ge=1)


@router.get("")
async def list_lists(
    owner_id: int = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
    service: ListService = Depends(get_list_service),
):
    try:
        lists = await service.get_user_lists(db, owner_id)
    except ListAPIError as exc:
        raise_api_error(exc)
    return {"results": lists}


@router.get("/summary")
async def lists_summary(
    owner_id: int = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
    service: ListService = Depends(get_list_service),
):
    try:
        return await service.get_user_lists_summary(db, owner_id)
    except ListAPIError as exc:
        raise_api_error(exc)


@router.post("")
async def create_list(
    body: CreateListRequest,
    owner_id: int = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
    service: ListService = Depends(get_list_service),
):
    result = await service.create_list(db, owner_id, body.name, body.description, body.is_public)
    return result_response(result)


@router.get("/{list_id}")
async def get_list(
    list_id: int,
    owner_id: int = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
    service: ListService = Depends(get_list_service),
):
    try:
        return await service.get_list(db, owner_id, list_id)
    except ListAPIError as exc:
        raise_api_error(exc)


@router.put("/{list_id}")
async def update_list(
    list_id: int,
    body: UpdateListRequest,
    owner_id: int = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
    service: ListService = Depends(get_list_service),
):
    result = await service.update_list(db, owner_id, list_id, body.name, body.description, body.is_public)
    return result_response(result)


@router.delete("/{list_id}")
async def delete_list(
    list_id: int,
    owner_id: int = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
    service: ListService = Depends(get_list_service),
):
    return result_response(await service.delete_list(db, owner_id, list_id))


@router.post("/{list_id}/clear")
async def clear_list(
    list_id: int,
    owner_id: int = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
    service: ListService = Depends(get_list_service),
):
    return result_response(await service.clear_list(db, owner_id, list_id))


@router.post("/{list_id}/privacy")
async def toggle_privacy(
    list_id: int,
    body: PrivacyRequest,
    owner_id: int = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
    service: ListService = Depends(get_list_service),
):
    return result_response(await service.toggle_privacy(db, owner_id, list_id, body.is_public))


@router.get("/{list_id}/stats")
async def list_stats(
    list_id: int,
    owner_id: int = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
    service: ListService = Depends(get_list_service),
):
    try:
        return await service.get_list_stats(db, owner_id, list_id)
    except ListAPIError as exc:
        raise_api_error(exc)


@router.get("/{list_id}/items")
async def list_items(
    list_id: int,
    owner_id: int = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
    service: ListService = Depends(get_list_service),
):
    try:
        items = await service.get_list_movies(db, owner_id, list_id)
    except ListAPIError as exc:
        raise_api_error(exc)
    return {"results": items}


@router.get("/{list_id}/items/{movie_id}")
async def movie_in_list(
    list_id: int,
    movie_id: int,
    owner_id: int = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
    service: ListService = Depends(get_list_service),
):
    try:
        present = await service.movie_in_list(db, owner_id, list_id, movie_id)
    except ListAPIError as exc:
        raise_api_error(exc)
    return {"list_id": list_id, "movie_id": movie_id, "in_list": present}


@router.post("/{list_id}/items")
async def add_movie(
    list_id: int,
    body: AddMovieRequest,
    owner_id: int = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
    service: ListService = Depends(get_list_service),
):
    return result_response(await service.add_movie(db, owner_id, list_id, body.movie_id))


@router.delete("/{list_id}/items/{movie_id}")
async def remove_movie(
    list_id: int,
    movie_id: int,
    owner_id: int = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
    service: ListService = Depends(get_list_service),
):
    if movie_id < 1:
        raise HTTPException(status_code=400, detail="Invalid movie id")
    return result_response(await service.remove_movie(db, owner_id, list_id, movie_id))
