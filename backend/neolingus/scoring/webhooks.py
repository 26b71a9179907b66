from __future__ import annotations
import hashlib
import hmac
import json
import logging
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.orm import Session

from ..models import ScoringAttempt, utcnow
from ..settings import settings
from .repository import webhooks_for


logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-NeoLingus-Signature"


def sign(body: bytes, secret: str) -> str:
	return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify(body: bytes, secret: str, signature: str) -> bool:
	return hmac.compare_digest(sign(body, secret), signature or "")


def event_body(attempt: ScoringAttempt, event: str) -> Dict[str, Any]:
	body: Dict[str, Any] = {
		"event": event,
		"attempt_id": attempt.id,
		"tenant_id": attempt.tenant_id,
		"status": attempt.status,
		"provider": attempt.provider,
		"level": attempt.level,
		"task": attempt.task,
		"timestamp": utcnow().isoformat() + "Z",
	}
	if event == "attempt.scored":
		body["score"] = attempt.score_json
	else:
		body["error"] = attempt.error
		body["retry_count"] = attempt.retry_count
	return body


async def notify(db: Session, attempt: ScoringAttempt, event: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> List[str]:
	"""POST the event to every subscribed webhook; returns the urls that accepted it."""
	hooks = webhooks_for(db, attempt.tenant_id, event)
	if not hooks:
		return []
	body = json.dumps(event_body(attempt, event), sort_keys=True).encode("utf-8")
	delivered: List[str] = []
	async with httpx.AsyncClient(timeout=settings.webhook_timeout_seconds, transport=transport) as client:
		for hook in hooks:
			headers = {
				"Content-Type": "application/json",
				SIGNATURE_HEADER: sign(body, hook.secret),
				"X-NeoLingus-Event": event,
			}
			try:
				r = await client.post(hook.url, content=body, headers=headers)
				r.raise_for_status()
				delivered.append(hook.url)
			except httpx.HTTPError as err:
				logger.warning("Webhook %s failed for attempt %s (%s): %s", hook.url, attempt.id, event, err)
	return delivered
