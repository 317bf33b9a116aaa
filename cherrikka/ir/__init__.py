"""Canonical in-memory model of a chat backup."""

from cherrikka.ir.models import (
    BackupIR,
    IRAssistant,
    IRConversation,
    IRFile,
    IRMessage,
    IRPart,
)

__all__ = ["BackupIR", "IRAssistant", "IRConversation", "IRFile", "IRMessage", "IRPart"]
