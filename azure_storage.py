from base64 import b64decode, b64encode
from email.utils import formatdate, parsedate_to_datetime
from hashlib import sha256
from hmac import HMAC
from io import IOBase
from json import dumps
from typing import AsyncGenerator, Tuple, List, Optional
from typing import Union, IO
from urllib.parse import quote
from xml.etree import ElementTree

from aiohttp import ClientResponse, ClientSession
from config import get_logger

# Module-specific logger
logger = get_logger("azure")

class BlobClient:
    """Minimal Azure Blob Storage REST API client (SharedKeyLite).

    Only implements the small subset of operations the subscription store uses:
    get, put, delete and prefix listing of blobs, plus container creation.
    """

    account: str | None = None
    auth: bytes | None = None
    session: ClientSession | None = None

    def __init__(self, account: str, auth: str | None = None, session: ClientSession | None = None) -> None:
        assert auth, "Storage account key (auth) is required"
        self.account = account
        self.auth = b64decode(auth)
        self.session = session or ClientSession(json_serialize=dumps)


    async def close(self) -> None:
        """Close the session"""
        await self.session.close()


    def _headers(self, headers: dict | None = None, date: str | None = None) -> dict:
        """Default headers for REST requests"""
        if headers is None:
            headers = {}
        if not date:
            date = formatdate(usegmt=True)  # if you don't use GMT, the API breaks
        return {
            'x-ms-date': date,
            'x-ms-version': '2018-03-28',
            'Content-Type': 'application/octet-stream',
            'Connection': 'Keep-Alive',
            **headers,
        }


    def _sign_for_blobs(self, verb: str, canonicalized: str, headers: dict | None = None, payload: Union[bytes, IO] = b"", length: int | None = None) -> dict:
        """Compute SharedKeyLite authorization header and add standard headers"""
        headers = self._headers(headers)
        signing_headers = sorted(filter(lambda x: 'x-ms' in x, headers.keys()))
        canon_headers = "\n".join("{}:{}".format(k, headers[k]) for k in signing_headers)
        sign = "\n".join([verb, '', headers['Content-Type'], '', canon_headers, canonicalized]).encode('utf-8')
        if length is None and isinstance(payload, IOBase):
            length = payload.seek(0, 2)
            payload.seek(0)
        elif length is None:
            length = len(payload)
        return {
            'Authorization': 'SharedKeyLite {}:{}'.format(self.account, \
                b64encode(HMAC(self.auth, sign, sha256).digest()).decode('utf-8')),
            'Content-Length': str(length),
            **headers
        }


    def _blob_uri(self, container_name: str, blob_path: str) -> Tuple[str, str]:
        canon = f'/{self.account}/{container_name}/{blob_path}'
        uri = f'https://{self.account}.blob.core.windows.net/{container_name}/{blob_path}'
        return canon, uri


    async def create_container(self, container_name: str) -> ClientResponse:
        """Create a container (409 if it already exists)"""
        canon = f'/{self.account}/{container_name}'
        uri = f'https://{self.account}.blob.core.windows.net/{container_name}?restype=container'
        return await self.session.put(uri, headers=self._sign_for_blobs("PUT", canon))


    def _parse_blob_list_xml(self, xml_text: str) -> Tuple[List[dict], Optional[str]]:
        """Parse Azure List Blobs XML and return (items, next_marker)."""
        doc = ElementTree.fromstring(xml_text)
        items: List[dict] = []
        for blob in doc.findall(".//Blob"):
            item = {"name": blob.findtext("Name")}
            props_parent = blob.find("Properties")
            if props_parent is not None:
                for prop in list(props_parent):
                    tag = prop.tag
                    text = prop.text
                    if tag in ["Last-Modified", "Etag", "Content-Length"] and text:
                        key = tag.lower()
                        if tag == "Last-Modified":
                            item[key] = parsedate_to_datetime(text)
                        elif tag == "Content-Length":
                            item[key] = int(text)
                        else:
                            item[key] = text
            items.append(item)
        next_marker = doc.findtext("NextMarker") or None
        return items, next_marker

    async def list_blobs(self, container_name: str, prefix: str | None = None) -> AsyncGenerator[dict, None]:
        """List blobs (paginated, optionally filtered by name prefix) yielding minimal dict metadata.

        Raises:
            aiohttp.ClientResponseError: If a listing page cannot be retrieved
        """
        canon = f'/{self.account}/{container_name}?comp=list'
        base_uri = f'https://{self.account}.blob.core.windows.net/{container_name}?restype=container&comp=list'
        if prefix:
            base_uri += f"&prefix={quote(prefix)}"
        next_marker = None
        while True:
            uri = base_uri if not next_marker else f"{base_uri}&marker={quote(next_marker)}"
            res = await self.session.get(uri, headers=self._sign_for_blobs("GET", canon))
            if not res.ok:
                logger.error(f"Blob listing failed for container {container_name}: HTTP {res.status}")
                logger.debug(await res.text())
                res.raise_for_status()
            text = await res.text()
            items, next_marker = self._parse_blob_list_xml(text)
            for item in items:
                yield item
            if not next_marker:
                break


    async def get_blob(self, container_name: str, blob_path: str) -> ClientResponse:
        """Download a blob; callers inspect the status (404 when missing)"""
        canon, uri = self._blob_uri(container_name, blob_path)
        return await self.session.get(uri, headers=self._sign_for_blobs("GET", canon))


    async def put_blob(self, container_name: str, blob_path: str, payload: Union[bytes, IO], mimetype: str | None = None, cache_control: str | None = None) -> ClientResponse:
        """Upload a blob"""
        canon, uri = self._blob_uri(container_name, blob_path)
        if not mimetype:
            mimetype = "application/octet-stream"
        headers = {
            'x-ms-blob-type': 'BlockBlob',
            'x-ms-blob-content-type': mimetype,
            'Content-Type': mimetype,
        }
        if cache_control:
            headers['x-ms-blob-cache-control'] = cache_control
        return await self.session.put(uri, data=payload, headers=self._sign_for_blobs("PUT", canon, headers, payload))

    async def delete_blob(self, container_name: str, blob_path: str) -> ClientResponse:
        """Delete a blob"""
        canon, uri = self._blob_uri(container_name, blob_path)
        return await self.session.delete(uri, headers=self._sign_for_blobs("DELETE", canon))
