from __future__ import annotations

import logging
from typing import Optional

from auraquest import ai_service
from auraquest.models import OnboardingTurn, UserProfile

logger = logging.getLogger(__name__)


class OnboardingSession:
    """Conversational profile builder, bounded to a fixed number of user replies."""

    def __init__(self, client: ai_service.GeminiClient | None = None, pack_key: str = ai_service.DEFAULT_PACK) -> None:
        self.client = client
        self.pack_key = pack_key
        self.history: list[dict] = []
        self.collected: dict = {}
        self.turn_index = 0
        self.profile: Optional[UserProfile] = None

    @property
    def is_complete(self) -> bool:
        return self.profile is not None

    async def _next(self) -> OnboardingTurn:
        turn = await ai_service.generate_onboarding_turn(
            self.history, self.turn_index, self.collected, client=self.client, pack_key=self.pack_key
        )
        self.collected.update({k: v for k, v in turn.extracted_data.items() if v not in (None, "", [])})
        self.history.append({"role": "assistant", "content": turn.message})
        if turn.is_complete:
            self.profile = turn.final_profile or ai_service.synthesize_profile(self.collected)
            logger.info("Onboarding finished after %s replies", self.turn_index)
        return turn

    async def start(self) -> OnboardingTurn:
        return await self._next()

    async def reply(self, text: str) -> OnboardingTurn:
        if self.is_complete:
            return OnboardingTurn(message="Onboarding is already complete.", is_complete=True, final_profile=self.profile)
        self.history.append({"role": "user", "content": text})
        self.turn_index += 1
        return await self._next()
