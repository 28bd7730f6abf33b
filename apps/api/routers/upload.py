"""Share-image upload router."""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from routers.rate_limit import rate_limit
from routers.service_clients import get_storage_client
from services.errors import InvalidInput
from services.generation import decode_base64_image
from services.storage import SupabaseStorageClient, share_filename

router = APIRouter()


class UploadRequest(BaseModel):
    image: Optional[str] = None


@router.post("")
async def upload_image(
    request: UploadRequest,
    _rate_limit: None = Depends(rate_limit("upload", limit=60, window_seconds=3600)),
    storage: SupabaseStorageClient = Depends(get_storage_client),
):
    """Store a base64 JPEG in the shared bucket and return its public URL."""
    if not request.image:
        raise InvalidInput("Image data required")
    data = decode_base64_image(request.image)
    filename = share_filename()
    url = await storage.upload(filename, data, content_type="image/jpeg")
    return {"success": True, "url": url, "filename": filename}
