"""Instruction parsing collaborators."""
from stepwise.src.parser.fallback import fallback_parse
from stepwise.src.parser.instruction import InstructionParser

__all__ = ["InstructionParser", "fallback_parse"]
