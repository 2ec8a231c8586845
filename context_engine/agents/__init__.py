# =============================================================================
# Agents Package — Query Understanding and Context Assembly
# =============================================================================
#   - understanding.py: classify() / extract(), pure heuristics
#   - assembler.py:     ContextAssembler, rank/diversify/summarize, factory
#   - formatter.py:     format_context_for_prompt()
# =============================================================================
