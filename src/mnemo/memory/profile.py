"""User profile derived from semantic memories."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from mnemo.core.types import SemanticMemory, utcnow

PROFILE_CATEGORIES = ("Preference", "Interest", "Expertise")


@dataclass
class UserProfile:
    """Structured user profile rebuilt each turn.

    Preferences, interests and expertise come from semantic memories of the
    matching category; communication style and formality come from memory
    metadata when an extraction recorded them.
    """

    user_id: str = ""

    # Communication preferences
    communication_style: str = "conversational"  # conversational, formal, technical
    formality: str = "medium"  # low, medium, high
    response_length: str = "detailed"  # concise, balanced, detailed

    preferences: list[str] = field(default_factory=list)
    interests: list[str] = field(default_factory=list)
    expertise: list[str] = field(default_factory=list)

    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_memories(cls, user_id: str, memories: list[SemanticMemory]) -> "UserProfile":
        """Build a profile; higher-confidence memories are listed first."""
        profile = cls(user_id=user_id)
        for memory in sorted(memories, key=lambda m: (-m.confidence, m.concept)):
            if memory.user_id != user_id:
                continue
            if memory.category == "Preference":
                profile.add_preference(memory.description)
            elif memory.category == "Interest":
                profile.add_interest(memory.description)
            elif memory.category == "Expertise":
                profile.add_expertise(memory.description)

            style = memory.metadata.get("communication_style")
            if style:
                profile.communication_style = style
            formality = memory.metadata.get("formality")
            if formality:
                profile.formality = formality
            length = memory.metadata.get("response_length")
            if length:
                profile.response_length = length
        return profile

    @property
    def is_empty(self) -> bool:
        return not (self.preferences or self.interests or self.expertise)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "communication_style": self.communication_style,
            "formality": self.formality,
            "response_length": self.response_length,
            "preferences": self.preferences,
            "interests": self.interests,
            "expertise": self.expertise,
            "updated_at": self.updated_at.isoformat(),
        }

    def add_preference(self, preference: str) -> None:
        if preference not in self.preferences:
            self.preferences.append(preference)

    def add_interest(self, interest: str) -> None:
        """Add an interest if not already present."""
        if interest not in self.interests:
            self.interests.append(interest)

    def add_expertise(self, area: str) -> None:
        """Add expertise area if not already present."""
        if area not in self.expertise:
            self.expertise.append(area)

    def to_prompt_context(self) -> str:
        """Format profile for injection into the working context."""
        lines = []

        if self.communication_style != "conversational":
            lines.append(f"Communication: {self.communication_style}")

        if self.formality != "medium":
            lines.append(f"Formality: {self.formality}")

        if self.preferences:
            lines.append(f"Preferences: {'; '.join(self.preferences)}")

        if self.interests:
            lines.append(f"Interests: {'; '.join(self.interests)}")

        if self.expertise:
            lines.append(f"Expertise: {'; '.join(self.expertise)}")

        return "\n".join(lines)
