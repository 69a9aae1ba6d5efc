"""HTTP client for the transaction application's workflow-template endpoint."""

from typing import Optional

import httpx
import structlog

from .config import WorkflowApiConfig
from .errors import AutomationError, ErrorCategory, ErrorSeverity, NotFoundError, TransientError


logger = structlog.get_logger()


class WorkflowApiClient:
    """
    Applies workflow templates through the application's HTTP API.

    POST {base_url}/transactions/{transaction_id}/workflows
    body: {"template_id": ..., "applied_by": ...}
    response: {"workflow_instance_id": ...}

    Network errors, timeouts and 5xx responses raise TransientError so the
    execution is retried; 404 raises NotFoundError; other 4xx responses are
    permanent failures.
    """

    def __init__(self, config: WorkflowApiConfig):
        if not config.base_url:
            raise ValueError("workflow_api.base_url is required")

        headers = {}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"

        self._client = httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            headers=headers,
            timeout=config.timeout_seconds,
        )

    async def apply_template(
        self,
        transaction_id: str,
        template_id: str,
        applied_by: Optional[str],
    ) -> str:
        try:
            response = await self._client.post(
                f"/transactions/{transaction_id}/workflows",
                json={"template_id": template_id, "applied_by": applied_by},
            )
        except httpx.HTTPError as e:
            raise TransientError(
                f"Workflow API request failed: {e}",
                operation="apply_template",
            ) from e

        if response.status_code >= 500:
            raise TransientError(
                f"Workflow API error {response.status_code}: {response.text[:200]}",
                operation="apply_template",
            )

        if response.status_code == 404:
            raise NotFoundError(
                f"Workflow API could not find transaction {transaction_id} or template {template_id}",
                entity="transaction",
                entity_id=transaction_id,
            )

        if response.status_code >= 400:
            raise AutomationError(
                f"Workflow API rejected template {template_id}: "
                f"{response.status_code} {response.text[:200]}",
                severity=ErrorSeverity.HIGH,
                category=ErrorCategory.EXTERNAL,
                context={"transaction_id": transaction_id, "template_id": template_id},
                retryable=False,
            )

        instance_id = response.json().get("workflow_instance_id")
        if not instance_id:
            raise TransientError(
                "Workflow API response missing workflow_instance_id",
                operation="apply_template",
            )

        logger.debug(
            "workflow_template_applied",
            transaction_id=transaction_id,
            template_id=template_id,
            workflow_instance_id=instance_id,
        )
        return str(instance_id)

    async def close(self) -> None:
        await self._client.aclose()
