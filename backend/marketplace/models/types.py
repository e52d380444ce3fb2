from typing import Mapping, Optional

from sqlalchemy import Enum as SAEnum


class CanonicalEnum(SAEnum):
    """Enum column type that stores lowercase values and folds legacy aliases.

    Rows written by older clients may carry overlapping vocabularies for the
    same state (e.g. ``pending_bids`` and ``finding_contractor``); ``aliases``
    maps each of those spellings onto the canonical enum value on both the
    write and the read path.
    """

    def __init__(self, enum_cls, aliases: Optional[Mapping[str, str]] = None, **kwargs):
        self._enum_cls = enum_cls
        self._aliases = dict(aliases or {})
        self._enum_kwargs = kwargs.copy()
        kwargs.setdefault("values_callable", lambda enum: [e.value for e in enum])
        super().__init__(enum_cls, **kwargs)

    def _canonical(self, value):
        if value is None:
            return None
        if isinstance(value, str):
            value = value.strip().lower()
            return self._aliases.get(value, value)
        return value.value

    def adapt(self, impltype, **kw):
        params = {**self._enum_kwargs, **kw}
        return CanonicalEnum(self._enum_cls, aliases=self._aliases, **params)

    def bind_processor(self, dialect):
        parent = super().bind_processor(dialect)

        def process(value):
            value = self._canonical(value)
            if value is None:
                return None
            if parent:
                return parent(value)
            return value

        return process

    def result_processor(self, dialect, coltype):
        parent = super().result_processor(dialect, coltype)

        def process(value):
            value = self._canonical(value)
            if value is None:
                return None
            if parent:
                return parent(value)
            return value

        return process
