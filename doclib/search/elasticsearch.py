"""
Elasticsearch-compatible search backend over plain REST (httpx).

    upsert       PUT    /<index>/_doc/<id>
    delete       DELETE /<index>/_doc/<id>      (404 = already gone)
    bulk_upsert  POST   /_bulk                   (NDJSON)
    health       GET    /_cluster/health  +  HEAD /<index>

Works against Elasticsearch 7/8 and OpenSearch. Transport errors and 5xx
responses raise IndexUnavailableError; a 4xx on a single document means the
engine rejected it (mapping conflict, bad payload) and is not retryable.
"""

from __future__ import annotations

import json
import logging

import httpx

from doclib.core.config import Settings, settings as default_settings
from doclib.core.errors import IndexUnavailableError, PipelineError
from doclib.search.base import BulkResult, SearchBackend

logger = logging.getLogger(__name__)


class ElasticsearchBackend(SearchBackend):

    def __init__(
        self,
        cfg: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        cfg = cfg or default_settings
        self._index = cfg.search_index
        auth = (cfg.search_username, cfg.search_password) if cfg.search_username else None
        self._client = client or httpx.AsyncClient(
            base_url=cfg.search_url,
            auth=auth,
            timeout=cfg.search_timeout_seconds,
        )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise IndexUnavailableError(f"Search engine unreachable: {exc}") from exc
        if resp.status_code >= 500:
            raise IndexUnavailableError(
                f"Search engine error {resp.status_code}: {resp.text[:200]}"
            )
        return resp

    async def upsert(self, doc_id: str, document: dict) -> None:
        resp = await self._request("PUT", f"/{self._index}/_doc/{doc_id}", json=document)
        if resp.status_code >= 400:
            raise PipelineError(
                f"Document {doc_id} rejected ({resp.status_code}): {resp.text[:200]}",
                code="INDEX_REJECTED",
            )

    async def delete(self, doc_id: str) -> None:
        resp = await self._request("DELETE", f"/{self._index}/_doc/{doc_id}")
        if resp.status_code >= 400 and resp.status_code != 404:
            raise PipelineError(
                f"Delete of {doc_id} rejected ({resp.status_code})",
                code="INDEX_REJECTED",
            )

    async def bulk_upsert(self, documents: dict[str, dict]) -> BulkResult:
        result = BulkResult()
        if not documents:
            return result

        lines: list[str] = []
        for doc_id, document in documents.items():
            lines.append(json.dumps({"index": {"_index": self._index, "_id": doc_id}}))
            lines.append(json.dumps(document))
        body = "\n".join(lines) + "\n"

        resp = await self._request(
            "POST", "/_bulk",
            content=body.encode("utf-8"),
            headers={"Content-Type": "application/x-ndjson"},
        )
        if resp.status_code >= 400:
            error = f"bulk request rejected ({resp.status_code})"
            result.failed = {doc_id: error for doc_id in documents}
            return result

        for item in resp.json().get("items", []):
            op = item.get("index", {})
            doc_id = str(op.get("_id"))
            if op.get("status", 500) >= 300:
                reason = op.get("error", {})
                result.failed[doc_id] = (
                    reason.get("reason", str(reason)) if isinstance(reason, dict) else str(reason)
                )
            else:
                result.indexed.append(doc_id)

        logger.info(
            "Bulk upsert | index=%s indexed=%d failed=%d",
            self._index, len(result.indexed), len(result.failed),
        )
        return result

    async def health(self) -> dict:
        try:
            cluster = await self._request("GET", "/_cluster/health")
            index = await self._request("HEAD", f"/{self._index}")
        except IndexUnavailableError as exc:
            logger.warning("Search health check failed: %s", exc)
            return {"reachable": False, "cluster_status": None, "index_exists": False, "detail": str(exc)}

        status = cluster.json().get("status") if cluster.status_code == 200 else None
        return {
            "reachable": True,
            "cluster_status": status,
            "index_exists": index.status_code == 200,
        }

    async def close(self) -> None:
        await self._client.aclose()
