from __future__ import annotations
import json
import re
import httpx
from typing import Any, Dict, List, Optional
from .settings import settings


OPENAI_STYLE = ("openai", "deepseek", "openrouter")
PROVIDERS = OPENAI_STYLE + ("gemini",)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


class LLMError(RuntimeError):
	pass


def extract_json(text: str) -> Dict[str, Any]:
	"""Parse a model reply into a JSON object.

	Models wrap JSON in prose or markdown fences often enough that we try, in order:
	the raw text, a fenced ```json block, then the outermost {...} span.
	"""
	candidates: List[str] = [text.strip()]
	m = _FENCED_JSON.search(text)
	if m:
		candidates.append(m.group(1))
	start, end = text.find("{"), text.rfind("}")
	if start != -1 and end > start:
		candidates.append(text[start:end + 1])
	for candidate in candidates:
		try:
			value = json.loads(candidate)
		except ValueError:
			continue
		if isinstance(value, dict):
			return value
	raise LLMError(f"Model reply is not a JSON object: {text[:200]}")


class LLMClient:
	def __init__(
		self,
		provider: Optional[str] = None,
		model: Optional[str] = None,
		*,
		api_key: Optional[str] = None,
		base_url: Optional[str] = None,
		timeout: Optional[float] = None,
		transport: Optional[httpx.AsyncBaseTransport] = None,
	) -> None:
		self.provider = (provider or settings.scoring_default_provider).lower()
		if self.provider not in PROVIDERS:
			raise ValueError(f"Unsupported LLM provider: {self.provider}")
		self.model = model or self._default_model()
		self.api_key = api_key or self._configured_key()
		if not self.api_key:
			raise ValueError(f"{self.provider.upper()}_API_KEY is not configured")
		if self.provider == "gemini":
			# Google AI Studio (Generative Language API)
			self.base_url = base_url or f"https://generativelanguage.googleapis.com/v1beta/models/{self.model}:generateContent"
		else:
			root = base_url or self._configured_base_url()
			self.base_url = root.rstrip("/") + "/chat/completions"
		self._client = httpx.AsyncClient(timeout=timeout or settings.llm_timeout_seconds, transport=transport)

	def _default_model(self) -> str:
		if self.provider == "gemini":
			return settings.gemini_model
		if self.provider == "openrouter":
			return settings.openrouter_model
		return settings.scoring_default_model

	def _configured_key(self) -> Optional[str]:
		return {
			"openai": settings.openai_api_key,
			"deepseek": settings.deepseek_api_key,
			"openrouter": settings.openrouter_api_key,
			"gemini": settings.gemini_api_key,
		}[self.provider]

	def _configured_base_url(self) -> str:
		return {
			"openai": settings.openai_base_url,
			"deepseek": settings.deepseek_base_url,
			"openrouter": settings.openrouter_base_url,
		}[self.provider]

	async def generate(
		self,
		system_prompt: str,
		user_prompt: str,
		*,
		temperature: float = 0.1,
		seed: Optional[int] = None,
		json_mode: bool = False,
	) -> str:
		if self.provider == "gemini":
			return await self._post_gemini(system_prompt, user_prompt, temperature, json_mode)
		return await self._post_chat(system_prompt, user_prompt, temperature, seed, json_mode)

	async def generate_json(self, system_prompt: str, user_prompt: str, **kwargs: Any) -> Dict[str, Any]:
		text = await self.generate(system_prompt, user_prompt, json_mode=True, **kwargs)
		return extract_json(text)

	async def _post_chat(
		self,
		system_prompt: str,
		user_prompt: str,
		temperature: float,
		seed: Optional[int],
		json_mode: bool,
	) -> str:
		headers = {
			"Authorization": f"Bearer {self.api_key}",
			"Content-Type": "application/json",
		}
		if self.provider == "openrouter":
			headers["HTTP-Referer"] = settings.openrouter_referer
			headers["X-Title"] = settings.openrouter_title
		payload: Dict[str, Any] = {
			"model": self.model,
			"messages": [
				{"role": "system", "content": system_prompt},
				{"role": "user", "content": user_prompt},
			],
			"temperature": temperature,
		}
		if seed is not None:
			payload["seed"] = seed
		if json_mode:
			payload["response_format"] = {"type": "json_object"}
		r = await self._send(headers=headers, json=payload)
		try:
			return r.json()["choices"][0]["message"]["content"]
		except (KeyError, IndexError, TypeError, ValueError) as err:
			raise LLMError(f"Unexpected {self.provider} response: {r.text[:200]}") from err

	async def _post_gemini(self, system_prompt: str, user_prompt: str, temperature: float, json_mode: bool) -> str:
		generation: Dict[str, Any] = {"temperature": temperature}
		if json_mode:
			generation["responseMimeType"] = "application/json"
		payload: Dict[str, Any] = {
			"systemInstruction": {"parts": [{"text": system_prompt}]},
			"contents": [{"role": "user", "parts": [{"text": user_prompt}]}],
			"generationConfig": generation,
		}
		r = await self._send(params={"key": self.api_key}, json=payload)
		try:
			return r.json()["candidates"][0]["content"]["parts"][0]["text"]
		except (KeyError, IndexError, TypeError, ValueError) as err:
			raise LLMError(f"Unexpected Gemini response: {r.text[:200]}") from err

	async def _send(self, **kwargs: Any) -> httpx.Response:
		try:
			r = await self._client.post(self.base_url, **kwargs)
			r.raise_for_status()
		except httpx.TimeoutException as err:
			raise LLMError(f"{self.provider} request timeout") from err
		except httpx.HTTPStatusError as err:
			code = err.response.status_code
			if code == 429:
				raise LLMError(f"{self.provider} rate limit exceeded") from err
			if code >= 500:
				raise LLMError(f"{self.provider} service unavailable ({code})") from err
			raise LLMError(f"{self.provider} request failed ({code}): {err.response.text[:200]}") from err
		except httpx.RequestError as err:
			raise LLMError(f"{self.provider} network error: {err}") from err
		return r

	async def aclose(self) -> None:
		await self._client.aclose()
