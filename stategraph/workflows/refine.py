"""
Draft Refinement Workflow.

A small reflection loop demonstrating the engine without any external
service:
1. Write a first draft about a topic
2. Review it with two checks running in parallel (length, keyword coverage)
3. Score the draft
4. Revise and review again until the score reaches the threshold
"""

from typing import Any, Dict, List
import logging

from stategraph.engine.config import RunConfig
from stategraph.engine.graph import Graph, GraphBuilder
from stategraph.engine.node import node
from stategraph.engine.state import State


logger = logging.getLogger(__name__)


# ============================================================
# Node Handlers
# ============================================================

@node(name="draft", reads=["topic"], writes={"draft": str, "revisions": int})
def draft_node(state: State) -> Dict[str, Any]:
    """Write the first draft."""
    topic = state.get("topic", "the subject")
    return {"draft": f"Notes on {topic}.", "revisions": 0}


@node(name="check_length", reads=["draft"], writes={"word_count": int, "length_ok": bool})
def check_length_node(state: State, config: RunConfig) -> Dict[str, Any]:
    """
    Count the words of the draft.

    Updates state with:
    - word_count: int
    - length_ok: bool - at least `min_words` words
    """
    words = len(state.get("draft", "").split())
    return {"word_count": words, "length_ok": words >= config.min_words}


@node(name="check_keywords", reads=["draft", "keywords"], writes={"missing_keywords": List[str]})
def check_keywords_node(state: State) -> Dict[str, Any]:
    """Find requested keywords the draft does not mention yet."""
    text = state.get("draft", "").lower()
    missing = [k for k in state.get("keywords", []) if k.lower() not in text]
    return {"missing_keywords": missing}


@node(
    name="score",
    reads=["length_ok", "missing_keywords", "keywords"],
    writes={"score": float},
)
def score_node(state: State) -> Dict[str, Any]:
    """
    Combine both checks into a score between 0 and 1.

    Half of the score comes from the length check, half from keyword
    coverage.
    """
    keywords = state.get("keywords", [])
    missing = state.get("missing_keywords", [])
    coverage = 1.0 - len(missing) / len(keywords) if keywords else 1.0
    score = 0.5 * float(state.get("length_ok", False)) + 0.5 * coverage
    logger.info(f"Draft score: {score:.2f}")
    return {"score": round(score, 2)}


@node(
    name="revise",
    reads=["draft", "missing_keywords", "revisions"],
    writes={"draft": str, "revisions": int, "feedback": List[str]},
)
def revise_node(state: State) -> Dict[str, Any]:
    """Extend the draft, covering the first missing keyword if any."""
    missing = state.get("missing_keywords", [])
    feedback = list(state.get("feedback", []))
    if missing:
        addition = f" It also covers {missing[0]}."
        feedback.append(f"added keyword '{missing[0]}'")
    else:
        addition = " It adds further detail and examples."
        feedback.append("extended the draft")
    return {
        "draft": state.get("draft", "") + addition,
        "revisions": state.get("revisions", 0) + 1,
        "feedback": feedback,
    }


@node(name="finalize", reads=["draft"], writes={"answer": str})
def finalize_node(state: State) -> Dict[str, Any]:
    """Publish the accepted draft."""
    return {"answer": state.get("draft", "").strip()}


# ============================================================
# Condition Functions
# ============================================================

def good_enough(state: State, config: RunConfig) -> bool:
    """Routing condition: the score reached the quality threshold."""
    score = state.get("score", 0.0)
    if score >= config.quality_threshold:
        logger.info(f"Score {score} meets threshold {config.quality_threshold}")
        return True
    logger.info(f"Score {score} below threshold {config.quality_threshold}")
    return False


# ============================================================
# Workflow Factory
# ============================================================

def create_refine_workflow(max_iterations: int = 20) -> Graph:
    """
    Create the draft refinement graph.

    Workflow flow:
    ```
    draft → (check_length ∥ check_keywords) → score ─┬─→ finalize (if good enough)
                     ↑                               │
                     └──────────── revise ←──────────┘
    ```

    Run parameters (environment prefix REFINE_):
    - quality_threshold: float, default 1.0
    - min_words: int, default 12

    Args:
        max_iterations: Default iteration cap

    Returns:
        A built Graph
    """
    return (
        GraphBuilder(
            "Draft Refinement",
            description="Drafts, reviews and revises text until it scores well enough.",
            env_prefix="REFINE_",
            state_schema={"topic": str, "keywords": List[str]},
            max_iterations=max_iterations,
        )
        .add_node(draft_node)
        .add_node(check_length_node)
        .add_node(check_keywords_node)
        .add_node(score_node)
        .add_node(revise_node)
        .add_node(finalize_node)
        .declare_param("quality_threshold", float, 1.0,
                       description="Minimum score to accept a draft")
        .declare_param("min_words", int, 12,
                       description="Words a draft needs to pass the length check")
        .set_entry("draft")
        .add_edge("draft", ["check_length", "check_keywords"])
        .add_edge("check_length", "score")
        .add_edge("check_keywords", "score")
        .add_conditional_edge("score", good_enough, "finalize")
        .add_default_edge("score", "revise")
        .add_edge("revise", ["check_length", "check_keywords"])
        .mark_terminal("finalize")
        .build()
    )
