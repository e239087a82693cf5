"""
Graph Assembly — wires the extraction nodes into a LangGraph StateGraph.

Pipeline:
    load_document → extract → validate → END

Any node may raise; prescription_extractor.extract_prescription() turns every
failure into a single ExtractionError for the orchestrator.
"""

import logging

from langgraph.graph import END, StateGraph

from booking.nodes import extractor, loader, validator
from booking.state import ExtractionState

logger = logging.getLogger(__name__)


def build_graph() -> StateGraph:
    """
    Constructs and compiles the extraction graph.

    Returns a compiled graph ready to be invoked with an initial ExtractionState.
    """
    g = StateGraph(ExtractionState)

    # ── Register nodes ──────────────────────────────────────────────────────
    g.add_node("load_document", loader.run)
    g.add_node("extract", extractor.run)     # LLM or remote extraction service
    g.add_node("validate", validator.run)

    # ── Edges ───────────────────────────────────────────────────────────────
    g.set_entry_point("load_document")
    g.add_edge("load_document", "extract")
    g.add_edge("extract", "validate")
    g.add_edge("validate", END)

    logger.info("Extraction graph compiled successfully")
    return g.compile()


# Singleton instance shared by every session
extraction_graph = build_graph()
