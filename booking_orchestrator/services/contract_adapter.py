"""
DocuSeal Contract Adapter

Creates a signing submission for the rental agreement. The booking id
travels in submitter metadata and comes back in `data.metadata.booking_id`
on every DocuSeal webhook.
"""

import logging
from typing import Any, Dict, Optional

from ..config import settings
from ..exceptions import AdapterNotConfiguredError, NonRetryableAdapterError
from .provider_client import BaseProviderClient

logger = logging.getLogger(__name__)


class DocuSealClient(BaseProviderClient):
    provider = "docuseal"

    def __init__(
        self,
        api_key: Optional[str] = None,
        template_id: Optional[str] = None,
        base_url: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(base_url or settings.docuseal_api_url, **kwargs)
        self.api_key = api_key if api_key is not None else settings.docuseal_api_key
        self.template_id = template_id if template_id is not None else settings.docuseal_template_id

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.template_id)

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        headers["X-Auth-Token"] = self.api_key
        return headers

    def send_for_signature(self, booking_id: str, template_fields: Dict[str, Any]) -> str:
        """Create a submission pre-filled with `template_fields`; returns the submission id"""
        if not self.is_configured:
            raise AdapterNotConfiguredError(self.provider)

        submitter = {
            "email": template_fields.get("customer_email"),
            "name": template_fields.get("customer_name"),
            "role": "Renter",
            "fields": [
                {"name": name, "default_value": value, "readonly": True}
                for name, value in template_fields.items()
                if value is not None
            ],
            "metadata": {"booking_id": booking_id},
        }
        body = {
            "template_id": self.template_id,
            "send_email": True,
            "order": "preserved",
            "submitters": [submitter],
        }
        data = self._request("POST", "/submissions", json_body=body)

        # DocuSeal answers with the list of submitters
        first = data[0] if isinstance(data, list) and data else data
        submission_id = None
        if isinstance(first, dict):
            submission_id = first.get("submission_id") or first.get("id")
        if not submission_id:
            raise NonRetryableAdapterError(self.provider, "submission response without id")

        logger.info(f"DocuSeal submission {submission_id} created for booking {booking_id}")
        return str(submission_id)


def get_contract_adapter() -> Optional[DocuSealClient]:
    client = DocuSealClient()
    return client if client.is_configured else None
