"""
Question-Count & Escalation Policy.

Counts substantive user utterances on the active agent's metadata and arms a
one-shot transfer to the authentication agent once an unverified user crosses
the threshold. The transfer itself runs later, at a safe point chosen by the
dispatcher.
"""

import os
from typing import List, Optional
from pydantic import BaseModel, Field
import structlog

from schemas.results import DisplayMode, FlowContext, FunctionCallResult
from orchestrator.agent_registry import AgentRegistry
from orchestrator.state import SessionState

logger = structlog.get_logger()


class EscalationConfig(BaseModel):
    """Hand-tuned classification and threshold settings."""
    threshold: int = 6
    escalation_agent: str = "authentication"
    # Utterances are not counted while these agents are active
    exempt_agents: List[str] = Field(default_factory=lambda: ["schedule_meeting", "authentication"])
    ignored_prefixes: List[str] = Field(default_factory=lambda: [
        "{trigger msg:",
        "my verification code",
        "trigger_",
    ])
    ignored_phrases: List[str] = Field(default_factory=lambda: [
        "i need to verify my details",
        "hello, i need help with booking a visit. please show me available dates.",
        "i am interested in something else",
    ])
    ignored_substrings: List[str] = Field(default_factory=lambda: [
        "verification code is",
    ])
    filler_utterances: List[str] = Field(default_factory=lambda: [
        "ok", "okay", "thanks", "thank you", "mm", "hmm", "mm-hmm", "uh-huh",
        "yes", "yeah", "no", "hi", "hello", "bye",
    ])
    min_length: int = 3
    inaudible_marker: str = "[inaudible]"

    @classmethod
    def from_env(cls) -> "EscalationConfig":
        config = cls(threshold=int(os.getenv("QUESTION_ESCALATION_THRESHOLD", "6")))
        extra_fillers = os.getenv("ESCALATION_EXTRA_FILLERS")
        if extra_fillers:
            config.filler_utterances.extend(f.strip().lower() for f in extra_fillers.split(",") if f.strip())
        return config


class UtteranceClassifier:
    """Decides whether a user utterance is a substantive question."""

    def __init__(self, config: EscalationConfig):
        self.config = config

    def rejection_reason(self, text: Optional[str]) -> Optional[str]:
        """Return why an utterance does not qualify, or None if it does."""
        if not isinstance(text, str) or not text.strip():
            return "empty"
        normalized = text.strip().lower()
        if normalized == self.config.inaudible_marker:
            return "inaudible"
        if any(normalized.startswith(p) for p in self.config.ignored_prefixes):
            return "system_trigger"
        if normalized in self.config.ignored_phrases:
            return "system_trigger"
        if any(s in normalized for s in self.config.ignored_substrings):
            return "otp_relay"
        bare = normalized.rstrip(".!?,; ")
        if bare in self.config.filler_utterances:
            return "filler"
        if len(bare) < self.config.min_length:
            return "too_short"
        return None

    def is_qualifying(self, text: Optional[str]) -> bool:
        return self.rejection_reason(text) is None


class QuestionCountPolicy:
    def __init__(
        self,
        state: SessionState,
        registry: AgentRegistry,
        config: Optional[EscalationConfig] = None,
        classifier: Optional[UtteranceClassifier] = None,
    ):
        self.state = state
        self.registry = registry
        self.config = config or EscalationConfig()
        self.classifier = classifier or UtteranceClassifier(self.config)

    def observe_utterance(self, item_id: Optional[str], text: Optional[str]) -> bool:
        """
        Evaluate one user utterance from either delivery path.

        The first delivery of an item that carries text decides; later
        deliveries of the same item are ignored.

        Returns:
            True if the utterance was counted.
        """
        if not isinstance(text, str) or not text.strip():
            return False
        if item_id is not None:
            if item_id in self.state.observed_utterance_ids:
                return False
            self.state.observed_utterance_ids.add(item_id)

        agent = self.registry.active
        metadata = agent.metadata
        if agent.name in self.config.exempt_agents:
            return False
        if metadata.is_verified:
            return False
        reason = self.classifier.rejection_reason(text)
        if reason is not None:
            logger.debug("utterance_not_counted", session_id=self.state.session_id, reason=reason)
            return False

        metadata.user_question_count += 1
        count = metadata.user_question_count
        logger.info(
            "user_question_counted",
            session_id=self.state.session_id,
            agent=agent.name,
            count=count,
            threshold=self.config.threshold,
        )

        if count >= self.config.threshold and not self.state.escalation_triggered:
            self.state.escalation_triggered = True
            self.state.escalation_pending = True
            self.state.escalation_question = text.strip()
            logger.info("escalation_armed", session_id=self.state.session_id, agent=agent.name, count=count)
        return True

    def take_escalation(self) -> Optional[FunctionCallResult]:
        """Consume the armed escalation and build its transfer result."""
        if not self.state.escalation_pending:
            return None
        self.state.escalation_pending = False

        agent = self.registry.active
        # The agent may have changed since arming, e.g. a tool in the same turn moved to scheduling
        exempt = agent.name == self.config.escalation_agent or agent.name in self.config.exempt_agents
        if agent.metadata.is_verified or exempt:
            logger.info("escalation_dropped", session_id=self.state.session_id, agent=agent.name)
            return None

        logger.info("escalation_fired", session_id=self.state.session_id, source=agent.name)
        return FunctionCallResult(
            destination_agent=self.config.escalation_agent,
            silent_transfer=True,
            came_from=agent.name,
            flow_context=FlowContext.FROM_QUESTION_AUTH,
            pending_question=self.state.escalation_question,
            ui_display_hint=DisplayMode.VERIFICATION_FORM,
            user_question_count=agent.metadata.user_question_count,
        )

    def observe_result(self, result: FunctionCallResult) -> None:
        """Verification success re-enables escalation for the rest of the session."""
        if result.reports_verification and (self.state.escalation_triggered or self.state.escalation_pending):
            self.state.escalation_triggered = False
            self.state.escalation_pending = False
            self.state.escalation_question = None
            logger.info("escalation_cleared", session_id=self.state.session_id)
