"""
HTTP client for the FileHub attachment service.

Issues signed upload slots for cancellation evidence images and signed
download URLs for stored files.
"""
import os
import logging
from abc import ABC, abstractmethod
from datetime import datetime

import httpx

from ..schemas import UploadTicket

logger = logging.getLogger(__name__)

FILEHUB_BASE_URL = os.getenv("FILEHUB_BASE_URL", "http://filehub:8000")
FILEHUB_API_KEY = os.getenv("FILEHUB_API_KEY", "")
TIMEOUT = 5.0  # seconds
SIGNED_URL_TTL = 3600  # seconds


class AttachmentStore(ABC):
    @abstractmethod
    async def issue_upload_ticket(self, ttl: int, file_extension: str) -> UploadTicket:
        """Reserve a filename and a signed URL the client can PUT the file to."""

    @abstractmethod
    async def get_signed_url(self, filename: str, expires_in: int = SIGNED_URL_TTL) -> str:
        """Signed URL to download a stored file."""


class FileHubClient(AttachmentStore):
    def __init__(self, base_url: str = FILEHUB_BASE_URL, api_key: str = FILEHUB_API_KEY, timeout: float = TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    def _headers(self, **extra) -> dict:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        headers.update(extra)
        return headers

    async def issue_upload_ticket(self, ttl: int, file_extension: str) -> UploadTicket:
        """
        Request a signed upload URL from FileHub.

        Args:
            ttl: Seconds the upload URL stays valid
            file_extension: Extension of the file to be uploaded (e.g. "jpg")

        Returns:
            UploadTicket with the generated filename and the signed URL

        Raises:
            httpx.HTTPError: If FileHub is unreachable or rejects the request
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/api/uploads/signed-upload-url",
                    headers=self._headers(**{"Expires-In": str(ttl), "File-Extension": file_extension}),
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"FileHub signed upload URL request failed: {e}")
            raise
        expiration = data.get("expirationDate")
        return UploadTicket(
            filename=data["filename"],
            upload_url=data["signedUrl"],
            expiration_date=datetime.fromisoformat(expiration.replace("Z", "+00:00")) if expiration else None,
        )

    async def get_signed_url(self, filename: str, expires_in: int = SIGNED_URL_TTL) -> str:
        """
        Request a signed download URL for a stored file.

        Raises:
            httpx.HTTPError: If FileHub is unreachable or rejects the request
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/api/uploads/signed-url",
                    headers=self._headers(**{"Object-Path": filename, "Expires-In": str(expires_in)}),
                )
                response.raise_for_status()
                return response.json()["signedUrl"]
        except httpx.HTTPError as e:
            logger.error(f"FileHub signed URL request failed for '{filename}': {e}")
            raise
