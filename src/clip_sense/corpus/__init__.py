"""Dialogue and scene corpus backed by the local store."""

from clip_sense.corpus.sql_corpus import SqlDialogueCorpus

__all__ = ["SqlDialogueCorpus"]
