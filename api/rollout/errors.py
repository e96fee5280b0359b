from typing import Optional


class RolloutError(Exception):
    pass


class FeatureDecodeError(RolloutError, ValueError):
    """A persisted feature record could not be decoded."""

    def __init__(self, name: str, raw: Optional[str], reason: str):
        self.name = name
        self.raw = raw
        super().__init__(f"corrupt record for feature {name!r}: {reason}")
