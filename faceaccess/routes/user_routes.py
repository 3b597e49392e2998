from fastapi import APIRouter, Depends

from ..dependencies import get_photos, get_store
from ..errors import NotFoundError

router = APIRouter(tags=["Users"])


@router.get("/users")
def list_users(store=Depends(get_store)):
    users = [u.summary() for u in store.list_users()]
    return {"success": True, "count": len(users), "users": users}


@router.get("/users/{name}")
def get_user(name: str, store=Depends(get_store)):
    record = store.get(name)
    if record is None:
        raise NotFoundError("User not found")
    return {"success": True, "user": record.detail()}


@router.delete("/users/{name}")
def delete_user(name: str, store=Depends(get_store), photos=Depends(get_photos)):
    urls = store.delete(name)
    removed = photos.release(urls)
    return {"success": True, "message": f"User {name} deleted", "photosDeleted": removed}


@router.delete("/clear-all")
def clear_all(store=Depends(get_store), photos=Depends(get_photos)):
    urls = store.clear_all()
    removed = photos.release(urls)
    return {"success": True, "message": "All data cleared", "photosDeleted": removed}
