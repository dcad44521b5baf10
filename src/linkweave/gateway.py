"""Remote model gateway: embeddings, pair scoring and tag generation.

The orchestrator depends only on the RemoteModelGateway protocol. LLMGateway is
the concrete implementation; vendor differences live in the Completer
variants (AnthropicCompleter, OpenRouterCompleter) and JinaEmbedder.

Every remote call goes through errors.with_retry, so SDK exceptions reach
callers already classified as ConfigurationError / TransientError.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Awaitable, Callable, Protocol

from .config import (
    MAX_AI_SCORE,
    NEUTRAL_AI_SCORE,
    SCORING_MAX_TOKENS,
    SCORING_TEMPERATURE,
    TAGGING_MAX_TOKENS,
    TAGGING_TEMPERATURE,
    LinkerConfig,
)
from .errors import MAX_RETRY_ATTEMPTS, TransientError, with_retry
from .llm_providers import get_async_client, get_embedding_client, resolve_model
from .models import NoteForTagging, PairForScoring, ScoreResult, TagResult

log = logging.getLogger(__name__)

PARSE_FAILURE_REASON = "failed to parse LLM response"
MISSING_SCORE_REASON = "No score returned by model; neutral default applied"


DEFAULT_SCORING_PROMPT = """\
You evaluate how strongly pairs of notes from a personal knowledge base are related.
Notes may be reference material, essays, journal entries, poetry or sketches of ideas.

Score each pair with an integer from 0 to 10:
- 9-10: one note directly extends, answers or completes the other
- 7-8: they share a core theme, argument or image from different angles
- 5-6: a clear but secondary connection that could spark new thinking
- 3-4: a few shared terms or fragments, different overall direction
- 0-2: essentially unrelated

The embedding similarity is given for reference only; judge the content.

Respond with a JSON object of the form:
{"results": [{"pair_id": 1, "note_id_1": "...", "note_id_2": "...", "score": 7, "reasoning": "one sentence"}]}
with exactly one element per input pair. Output only the JSON object."""


DEFAULT_TAGGING_PROMPT = """\
You organize a personal knowledge base. For each note, suggest between {min_tags} and {max_tags}
concise tags that capture its core ideas and help connect it to related notes.

- Prefer existing tags when they still fit.
- Tags may be hierarchical with at most two levels, e.g. "philosophy/ethics".
- Use lowercase, with hyphens instead of spaces.

Respond with a JSON object of the form:
{{"results": [{{"note_id": "...", "tags": ["tag-one", "area/tag-two"], "reasoning": "one sentence"}}]}}
with exactly one element per input note. Output only the JSON object."""


class RemoteModelGateway(Protocol):
    """What the orchestrator needs from remote models."""

    async def embed(self, texts: list[str], model: str | None = None) -> list[list[float]]: ...

    async def score(self, pairs: list[PairForScoring], prompt: str | None = None) -> list[ScoreResult]: ...

    async def tag(
        self,
        notes: list[NoteForTagging],
        prompt: str | None = None,
        min_tags: int | None = None,
        max_tags: int | None = None,
    ) -> list[TagResult]: ...


# =============================================================================
# Provider variants
# =============================================================================


class Completer(Protocol):
    """One chat completion against a specific vendor."""

    provider: str

    async def complete(self, system: str, user: str, *, max_tokens: int, temperature: float) -> str: ...


class AnthropicCompleter:
    """Completion via Anthropic's messages API."""

    provider = "anthropic"

    def __init__(self, client: Any, model: str) -> None:
        self._client = client
        self._model = resolve_model(model, self.provider)

    async def complete(self, system: str, user: str, *, max_tokens: int, temperature: float) -> str:
        response = await self._client.messages.create(
            model=self._model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system,
            messages=[{"role": "user", "content": user}],
        )
        return response.content[0].text


class OpenRouterCompleter:
    """Completion via OpenRouter's OpenAI-compatible chat API."""

    provider = "openrouter"

    def __init__(self, client: Any, model: str) -> None:
        self._client = client
        self._model = resolve_model(model, self.provider)

    async def complete(self, system: str, user: str, *, max_tokens: int, temperature: float) -> str:
        response = await self._client.chat.completions.create(
            model=self._model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            max_tokens=max_tokens,
            temperature=temperature,
            response_format={"type": "json_object"},
        )
        return response.choices[0].message.content or ""


def build_completer(config: LinkerConfig) -> Completer:
    """Pick the Completer variant for the configured provider."""
    client, provider = get_async_client(config.llm)
    if provider == "anthropic":
        return AnthropicCompleter(client, config.llm.model)
    return OpenRouterCompleter(client, config.llm.model)


class JinaEmbedder:
    """Embeddings from Jina's OpenAI-compatible endpoint."""

    def __init__(self, client: Any, default_model: str) -> None:
        self._client = client
        self._default_model = default_model

    async def embed(self, texts: list[str], model: str | None = None) -> list[list[float]]:
        response = await self._client.embeddings.create(
            model=model or self._default_model,
            input=texts,
        )
        data = sorted(response.data, key=lambda item: item.index)
        return [list(item.embedding) for item in data]


# =============================================================================
# Response parsing
# =============================================================================

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)
_RESULT_KEYS = ("results", "scores", "tags", "pairs", "notes")


def _extract_first_json_object(text: str) -> dict:
    """Extract the first valid JSON object from text.

    Raises:
        json.JSONDecodeError: If no complete JSON object is found.
    """
    text = text.strip()
    start = text.find("{")
    if start == -1:
        raise json.JSONDecodeError("No JSON object found", text, 0)

    depth = 0
    in_string = False
    escape_next = False
    for i, char in enumerate(text[start:], start):
        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return json.loads(text[start : i + 1])

    raise json.JSONDecodeError("Incomplete JSON object", text, len(text))


def _unwrap(parsed: Any) -> list[dict] | None:
    if isinstance(parsed, list):
        return [item for item in parsed if isinstance(item, dict)]
    if isinstance(parsed, dict):
        for key in _RESULT_KEYS:
            value = parsed.get(key)
            if isinstance(value, list):
                return [item for item in value if isinstance(item, dict)]
    return None


def extract_json_results(text: str) -> list[dict] | None:
    """Pull the list of per-item result objects out of a model response.

    Tries, in order: a fenced ```json block, the whole text, the outermost
    [...] span, then the first {...} object. Objects are unwrapped through
    their ``results``/``scores``/``tags`` key.

    Returns:
        List of result dicts, or None if nothing parseable was found.
    """
    candidates: list[str] = []
    fenced = _FENCED_JSON.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    candidates.append(text)
    start, end = text.find("["), text.rfind("]")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])

    for candidate in candidates:
        try:
            results = _unwrap(json.loads(candidate.strip()))
        except json.JSONDecodeError:
            continue
        if results is not None:
            return results

    try:
        return _unwrap(_extract_first_json_object(text))
    except json.JSONDecodeError:
        return None


def _clamp_score(value: Any) -> float | None:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return None
    return min(MAX_AI_SCORE, max(0.0, score))


def _clean_tags(raw: Any, max_tags: int) -> list[str]:
    if not isinstance(raw, list):
        return []
    tags: list[str] = []
    for tag in raw:
        cleaned = str(tag).strip().lstrip("#").strip()
        if cleaned and cleaned not in tags:
            tags.append(cleaned)
    return tags[:max_tags]


def _neutral(pair: PairForScoring, reasoning: str) -> ScoreResult:
    return ScoreResult(id_1=pair.id_1, id_2=pair.id_2, score=NEUTRAL_AI_SCORE, reasoning=reasoning)


def parse_score_response(text: str, pairs: list[PairForScoring]) -> list[ScoreResult]:
    """Map a scoring response onto the input pairs.

    Results are matched by ``pair_id`` (1-based), then by note ids, then by
    position. Pairs the model skipped get a neutral score with an explanatory
    reasoning; an unparseable response gives every pair that treatment.
    """
    results = extract_json_results(text)
    if results is None:
        log.warning("Could not parse scoring response for %d pairs", len(pairs))
        return [_neutral(pair, PARSE_FAILURE_REASON) for pair in pairs]

    if len(results) != len(pairs):
        log.warning("Scoring response has %d results for %d pairs", len(results), len(pairs))

    by_pair_id: dict[int, dict] = {}
    by_ids: dict[frozenset[str], dict] = {}
    for item in results:
        pair_id = item.get("pair_id")
        if isinstance(pair_id, int) or (isinstance(pair_id, str) and pair_id.isdigit()):
            by_pair_id[int(pair_id)] = item
        ids = {item.get("note_id_1"), item.get("note_id_2")}
        if None not in ids:
            by_ids[frozenset(str(i) for i in ids)] = item

    scored: list[ScoreResult] = []
    for position, pair in enumerate(pairs):
        item = by_pair_id.get(position + 1) or by_ids.get(frozenset((pair.id_1, pair.id_2)))
        if item is None and not by_pair_id and not by_ids and position < len(results):
            item = results[position]
        score = _clamp_score(item.get("score")) if item is not None else None
        if score is None:
            scored.append(_neutral(pair, MISSING_SCORE_REASON))
            continue
        reasoning = item.get("reasoning", "")
        scored.append(
            ScoreResult(
                id_1=pair.id_1,
                id_2=pair.id_2,
                score=score,
                reasoning=reasoning if isinstance(reasoning, str) else "",
            )
        )
    return scored


def parse_tag_response(text: str, notes: list[NoteForTagging], max_tags: int) -> list[TagResult]:
    """Map a tagging response onto the input notes; unmatched notes get no tags."""
    results = extract_json_results(text)
    if results is None:
        log.warning("Could not parse tagging response for %d notes", len(notes))
        return [TagResult(id=note.id) for note in notes]

    by_id = {
        str(item.get("note_id") or item.get("id")): item
        for item in results
        if item.get("note_id") or item.get("id")
    }
    tagged: list[TagResult] = []
    for position, note in enumerate(notes):
        item = by_id.get(note.id)
        if item is None and not by_id and position < len(results):
            item = results[position]
        if item is None:
            tagged.append(TagResult(id=note.id))
            continue
        reasoning = item.get("reasoning", "")
        tagged.append(
            TagResult(
                id=note.id,
                tags=_clean_tags(item.get("tags"), max_tags),
                reasoning=reasoning if isinstance(reasoning, str) else "",
            )
        )
    return tagged


# =============================================================================
# Gateway
# =============================================================================


class LLMGateway:
    """RemoteModelGateway backed by Jina embeddings and an LLM completer."""

    def __init__(
        self,
        config: LinkerConfig,
        embedder: JinaEmbedder | None = None,
        completer: Completer | None = None,
        attempts: int = MAX_RETRY_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        """Create a gateway.

        Clients are built lazily so commands that never call a model (stats,
        health) work without API keys.
        """
        self._config = config
        self._embedder = embedder
        self._completer = completer
        self._retry_kwargs: dict[str, Any] = {"attempts": attempts}
        if sleep is not None:
            self._retry_kwargs["sleep"] = sleep

    def _get_embedder(self) -> JinaEmbedder:
        if self._embedder is None:
            self._embedder = JinaEmbedder(get_embedding_client(), self._config.jina_model_name)
        return self._embedder

    def _get_completer(self) -> Completer:
        if self._completer is None:
            self._completer = build_completer(self._config)
        return self._completer

    @property
    def model_name(self) -> str:
        return self._config.llm.model

    async def embed(self, texts: list[str], model: str | None = None) -> list[list[float]]:
        """Embed texts, each truncated to ``jina_max_chars``.

        Raises:
            TransientError: If retries are exhausted or the response size is wrong.
            ConfigurationError: On rejected credentials or model.
        """
        if not texts:
            return []
        embedder = self._get_embedder()
        limit = self._config.jina_max_chars
        truncated = [text[:limit] for text in texts]

        vectors = await with_retry(lambda: embedder.embed(truncated, model), **self._retry_kwargs)
        if len(vectors) != len(texts):
            raise TransientError(
                f"Embedding response has {len(vectors)} vectors for {len(texts)} inputs"
            )
        return vectors

    async def score(self, pairs: list[PairForScoring], prompt: str | None = None) -> list[ScoreResult]:
        """Score pairs 0-10 in one request; always returns one result per pair."""
        if not pairs:
            return []
        completer = self._get_completer()
        payload = {
            "pairs": [
                {
                    "pair_id": position + 1,
                    "note_1": {"id": pair.id_1, "title": pair.title_1, "content": pair.content_1},
                    "note_2": {"id": pair.id_2, "title": pair.title_2, "content": pair.content_2},
                    "similarity_score": round(pair.similarity_score, 4),
                }
                for position, pair in enumerate(pairs)
            ]
        }
        user = json.dumps(payload, ensure_ascii=False, indent=2)
        raw = await with_retry(
            lambda: completer.complete(
                prompt or DEFAULT_SCORING_PROMPT,
                user,
                max_tokens=SCORING_MAX_TOKENS,
                temperature=SCORING_TEMPERATURE,
            ),
            **self._retry_kwargs,
        )
        return parse_score_response(raw, pairs)

    async def tag(
        self,
        notes: list[NoteForTagging],
        prompt: str | None = None,
        min_tags: int | None = None,
        max_tags: int | None = None,
    ) -> list[TagResult]:
        """Suggest tags for notes in one request; always returns one result per note."""
        if not notes:
            return []
        completer = self._get_completer()
        min_tags = min_tags if min_tags is not None else self._config.min_tags
        max_tags = max_tags if max_tags is not None else self._config.max_tags
        system = prompt or DEFAULT_TAGGING_PROMPT.format(min_tags=min_tags, max_tags=max_tags)
        sections = []
        for note in notes:
            existing = ", ".join(note.existing_tags) if note.existing_tags else "none"
            sections.append(
                f"note_id: {note.id}\n"
                f"Title: {note.title}\n"
                f"Existing tags: {existing}\n"
                f"Content:\n{note.content}"
            )
        user = "\n\n---\n\n".join(sections)
        raw = await with_retry(
            lambda: completer.complete(
                system,
                user,
                max_tokens=TAGGING_MAX_TOKENS,
                temperature=TAGGING_TEMPERATURE,
            ),
            **self._retry_kwargs,
        )
        return parse_tag_response(raw, notes, max_tags)
