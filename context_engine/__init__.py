# =============================================================================
# context_engine — Query Intelligence & Context Assembly
# =============================================================================
#
# Turns a free-text question about a user's receipts, warranties, past
# conversations and spending into a ranked, diversified, cached bundle of
# evidence for an answer generator.
#
# Entry points:
#   create_context_assembler(settings) → ContextAssembler
#   ContextAssembler.assemble(query, tenant_id, conversation_id, options)
#   assemble_or_unavailable(...)       → bundle or explicit failure
#   format_context_for_prompt(bundle)  → Markdown context block
# =============================================================================

from context_engine.agents.assembler import (
    ContextAssembler,
    assemble_or_unavailable,
    create_context_assembler,
)
from context_engine.agents.formatter import format_context_for_prompt
from context_engine.errors import (
    ContextEngineError,
    ContextUnavailable,
    EmbeddingUnavailable,
)

__all__ = [
    "ContextAssembler",
    "ContextEngineError",
    "ContextUnavailable",
    "EmbeddingUnavailable",
    "assemble_or_unavailable",
    "create_context_assembler",
    "format_context_for_prompt",
]
