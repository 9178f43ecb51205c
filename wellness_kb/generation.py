"""Reply generation with knowledge-base context, using OpenAI chat completions.

Provides:
- build_system_prompt: appends retrieved context to the assistant's base prompt
- generate_reply: one chat completion grounded in a RetrievalResult; served by
  the /kb/chat endpoint for the conversation flow

The knowledge base only augments the prompt; when retrieval returned nothing
the base prompt is used unchanged.
"""
from typing import Dict, List, Optional

from wellness_kb.config import settings
from wellness_kb.embedding import get_client
from wellness_kb.obs import Trace
from wellness_kb.schemas import RetrievalResult

KB_SECTION_HEADER = "Relevant information from knowledge base:"
KB_USAGE_INSTRUCTION = "Use this information to provide accurate and helpful responses when relevant."


def build_system_prompt(base_prompt: str, context_text: str) -> str:
    """Append knowledge-base context to a system prompt.

    Args:
        base_prompt: The assistant's standing instructions.
        context_text: Assembled context from the retrieval pipeline; may be empty.

    Returns:
        str: base_prompt unchanged when there is no context, otherwise the prompt
        followed by the context section and a usage instruction.
    """
    if not context_text:
        return base_prompt
    return f"{base_prompt}\n\n{KB_SECTION_HEADER}\n{context_text}\n\n{KB_USAGE_INSTRUCTION}"


def generate_reply(
    base_prompt: Optional[str],
    history: List[Dict[str, str]],
    retrieval: RetrievalResult,
    max_tokens: Optional[int] = None,
) -> str:
    """Generate the assistant's next message.

    Args:
        base_prompt: System prompt; defaults to settings.BASE_SYSTEM_PROMPT.
        history: Prior conversation as {"role", "content"} messages, ending with the user turn.
        retrieval: Knowledge-base context for the latest user message.
        max_tokens: Optional cap for output tokens; defaults to settings.MAX_OUTPUT_TOKENS.

    Returns:
        str: The generated reply text.
    """
    system = build_system_prompt(base_prompt or settings.BASE_SYSTEM_PROMPT, retrieval.context_text)
    trace = Trace("generate_reply", input={"turns": len(history), "kb_sources": len(retrieval.sources)})

    resp = get_client().chat.completions.create(
        model=settings.OPENAI_MODEL,
        messages=[{"role": "system", "content": system}, *history],
        temperature=0.7,
        max_tokens=max_tokens or settings.MAX_OUTPUT_TOKENS,
    )
    content = (resp.choices[0].message.content or "").strip()

    trace.generation(
        "reply",
        prompt=history[-1]["content"] if history else "",
        output=content,
        metadata={"sources": [s.file_name for s in retrieval.sources]},
    )
    trace.end(output={"chars": len(content)})
    return content
