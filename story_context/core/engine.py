"""
Per-turn orchestration.

``TurnEngine`` is the only component that touches all the others: it
assembles context, makes sure the knowledge base is reachable, streams
the response through the decoder, applies corrections and books the cost.
"""

import asyncio
import uuid
from dataclasses import replace
from typing import Callable, Dict, List, Mapping, Optional

from story_context.config.loader import EngineConfig
from story_context.core.accounting import CostAccountant, StorageCostMeter
from story_context.core.assembler import AssembledContext, GenerationRequest, assemble_context, build_request
from story_context.core.cache_manager import CacheLifecycleManager
from story_context.core.errors import ProviderTransportError
from story_context.core.history import ContextMode, Intent, is_story_intent, sunk_usage
from story_context.core.knowledge import (
    build_knowledge_base_text,
    calculate_kb_hash,
    extract_last_scene,
    find_story_outline,
)
from story_context.core.locales import get_locale, locale_for_outline
from story_context.core.session import SessionStore
from story_context.core.stream_decoder import DecodeResult, StreamDecoder
from story_context.core.token_counter import count_tokens_or_estimate
from story_context.logger import get_logger
from story_context.storage.autosave import AutoSaveQueue
from story_context.storage.models import ROLE_MODEL, ROLE_USER, Part, Turn
from story_context.storage.repository import KeyValueStore

log = get_logger(__name__)

STORY_PREVIEW_CHARS = 200


def new_turn_id() -> str:
    return uuid.uuid4().hex


class TurnEngine:
    """Runs turns against a provider.

    Args:
        provider: LLMProvider
        config: Engine configuration
        store: Persistence port shared by the cache manager and accountant
        kb_files: Local knowledge-base files (path -> content)
        system_instruction: System prompt sent with every call
        session: Session store (a fresh one by default)
        autosave: Optional queue asked to save after every finished turn
        ledger_db: Optional SQLite path for the append-only usage ledger
    """

    def __init__(
        self,
        provider,
        config: EngineConfig,
        store: KeyValueStore,
        kb_files: Optional[Mapping[str, str]] = None,
        system_instruction: str = "",
        session: Optional[SessionStore] = None,
        autosave: Optional[AutoSaveQueue] = None,
        ledger_db: Optional[str] = None,
    ):
        self.provider = provider
        self.config = config
        self.store = store
        self.kb_files: Dict[str, str] = dict(kb_files or {})
        self.system_instruction = system_instruction
        self.session = session or SessionStore()
        self.autosave = autosave
        self.locale = get_locale(config.output_language)
        self.post_processor = config.postprocess.build(config.output_language)
        self.accountant = CostAccountant(
            store, table=config.pricing, session_id=self.session.state.session_id, ledger_db=ledger_db
        )
        self.meter = StorageCostMeter(store)
        self.cache = CacheLifecycleManager(
            provider,
            store,
            meter=self.meter,
            ttl_seconds=config.cache_ttl_seconds,
            table=config.pricing,
            accountant=self.accountant,
        )

    @property
    def kb_text(self) -> str:
        return build_knowledge_base_text(self.kb_files)

    def kb_hash(self) -> str:
        return calculate_kb_hash(self.kb_text, self.config.model_id, self.system_instruction)

    async def start(self) -> None:
        """Restore the persisted cache record, re-validating it remotely.

        An empty session with a loaded knowledge base is then opened from
        the outline's last scene.
        """
        expected = self.kb_hash() if self.kb_files else None
        if expected:
            self.session.update(lambda s: replace(s, kb_hash=expected))
        await self.cache.restore(expected_hash=expected, model_id=self.config.model_id)
        if self.kb_files and not self.session.state.turns:
            self.initialize_session()

    def initialize_session(self) -> bool:
        """Seed an empty session with the story outline's last scene.

        Adds a hidden user turn and a model turn carrying the scene. The
        model turn's analysis is the local-init marker, so the act header
        is anchored right after it. Without a last-scene marker the local
        files are dropped and a reference-only error turn is added instead.

        Returns:
            True if the last scene was found
        """
        path, content = find_story_outline(self.kb_files)
        last_scene = extract_last_scene(content or "")

        if not last_scene:
            log.warning("local initialization failed: no last_scene marker in %r", path or "(no outline)")
            self.kb_files = {}
            message = self.locale.marker_not_found.format(file_name=path)
            self.session.append_turn(Turn(
                id=new_turn_id(),
                role=ROLE_MODEL,
                content=message,
                parts=(Part(text=message),),
                is_ref_only=True,
            ))
            return False

        # The declaration follows the scenario's language, not the output language
        declaration = (locale_for_outline(path) or self.locale).adult_declaration
        intro = self.locale.intro_text
        scene = declaration + last_scene
        self.session.append_turn(Turn(
            id=new_turn_id(),
            role=ROLE_USER,
            content=intro,
            parts=(Part(text=intro),),
            is_hidden=True,
        ))
        self.session.append_turn(Turn(
            id=new_turn_id(),
            role=ROLE_MODEL,
            content=scene,
            parts=(Part(text=scene),),
            analysis=self.locale.local_init_analysis,
        ))
        log.info("local initialization: last scene loaded from %s", path)
        return True

    async def shutdown(self) -> None:
        self.meter.stop()
        if self.autosave is not None:
            await self.autosave.wait()

    def build_context(self, force_full: bool = False) -> AssembledContext:
        """Assemble context from the current session state.

        ``force_full`` uses the save context mode (save commands need the
        whole history).
        """
        mode = self.config.save_context_mode if force_full else self.config.context_mode
        return assemble_context(
            self.session.state.turns,
            self.locale.act_header,
            mode=mode,
            block_size=self.config.summary_block_size,
            windows=self.config.recent_window,
        )

    def use_cache(self) -> bool:
        """Cache mode when enabled and the provider supports it."""
        return self.config.enable_cache and self.provider.get_capabilities().supports_context_caching

    def uses_remote_context(self) -> bool:
        """True when the knowledge base travels as a remote cache or file."""
        if self.cache.active_cache_name or self.cache.active_file_uri:
            return True
        if not self.kb_files:
            return False
        capabilities = self.provider.get_capabilities()
        return self.use_cache() or capabilities.supports_file_upload

    def build_request(self, user_text: str, intent: str = Intent.ACTION, intent_prefix: str = "") -> GenerationRequest:
        """Payload the next turn would send, without sending it."""
        context = self.build_context(force_full=intent == Intent.SAVE)
        use_cache = self.use_cache()
        return build_request(
            context.contents,
            user_text,
            model_id=self.config.model_id,
            system_instruction=self.system_instruction,
            act_header=self.locale.act_header,
            kb_text=self.kb_text,
            cached_content_name=self.cache.active_cache_name if use_cache else None,
            file_uri=self.cache.active_file_uri,
            intent_prefix=intent_prefix,
        )

    async def count_request_tokens(self, user_text: str, intent: str = Intent.ACTION) -> int:
        """Tokens the next request would carry, estimated if the provider cannot count."""
        request = self.build_request(user_text, intent)
        return await count_tokens_or_estimate(self.provider, request.model, request.contents)

    async def send_turn(
        self,
        user_text: str,
        intent: str = Intent.ACTION,
        intent_prefix: str = "",
        cancel_event: Optional[asyncio.Event] = None,
        on_thought: Optional[Callable[[str], None]] = None,
        on_preview: Optional[Callable[[str, str], None]] = None,
    ) -> Turn:
        """Run one turn end to end.

        Returns:
            The stored model turn

        Raises:
            SessionExpired: If the knowledge base cannot be recovered
            ProviderTransportError: If generation fails; the user turn is
                kept but marked reference-only
        """
        if self.uses_remote_context():
            await self.cache.check_and_refresh(
                self.kb_files, self.system_instruction, self.config.model_id, self.use_cache()
            )

        request = self.build_request(user_text, intent, intent_prefix)
        user_turn = Turn(
            id=new_turn_id(),
            role=ROLE_USER,
            content=user_text,
            parts=(Part(text=intent_prefix + user_text),),
            intent=intent,
        )
        self.session.append_turn(user_turn)

        decoder = StreamDecoder(
            language=self.config.output_language,
            post_processor=self.post_processor,
            on_thought=on_thought,
            on_preview=on_preview,
        )
        try:
            stream = self.provider.generate_content_stream(
                request.model,
                request.contents,
                request.system_instruction,
                request.config,
                cancel_event=cancel_event,
            )
            result = await decoder.consume(stream, cancel_event)
        except ProviderTransportError as e:
            log.error("generation failed for turn %s: %s", user_turn.id, e)
            self.session.replace_turn(user_turn.evolve(is_ref_only=True))
            raise

        model_turn = self._model_turn(result, intent)
        self.session.append_turn(model_turn)

        if result.is_correction:
            corrected_intent = self.session.apply_correction(model_turn.id, user_turn.id)
            model_turn = model_turn.evolve(intent=corrected_intent or Intent.ACTION)
            self.session.replace_turn(model_turn)

        self._book(model_turn)
        if is_story_intent(model_turn.intent) and model_turn.content:
            preview = model_turn.content[:STORY_PREVIEW_CHARS]
            self.session.update(lambda s: replace(s, story_preview=preview))
        if self.autosave is not None:
            self.autosave.request()
        return model_turn

    def _model_turn(self, result: DecodeResult, intent: str) -> Turn:
        return Turn(
            id=new_turn_id(),
            role=ROLE_MODEL,
            content=result.story,
            parts=result.to_parts(),
            usage=result.usage,
            is_correction=result.is_correction,
            intent=intent,
            analysis=result.analysis,
            summary=result.summary,
            thought=result.thought,
            character_log=result.character_log,
            inventory_log=result.inventory_log,
            quest_log=result.quest_log,
            world_log=result.world_log,
        )

    def _book(self, turn: Turn) -> None:
        try:
            cost = self.accountant.record_turn(turn.usage, self.config.model_id, turn.id)
        except ValueError as e:
            log.warning("turn %s not priced: %s", turn.id, e)
            cost = 0.0
        self.session.record_usage(turn.usage, cost)

    # History edits

    def delete_turn(self, turn_id: str) -> List[Turn]:
        removed = self.session.delete_turn(turn_id)
        self.accountant.add_sunk(sunk_usage(removed))
        return removed

    def rewind_to(self, turn_id: str) -> List[Turn]:
        removed = self.session.rewind_to(turn_id)
        self.accountant.add_sunk(sunk_usage(removed))
        return removed

    def toggle_ref_only(self, turn_id: str) -> None:
        self.session.toggle_ref_only(turn_id)

    def context_mode(self) -> ContextMode:
        return self.config.context_mode
