import logging
from typing import List

from langchain_core.prompts import PromptTemplate
from langchain_groq import ChatGroq

import config
from qna import format_context

logger = logging.getLogger(__name__)

NO_RESPONSE = "No response generated."


# -------------------------------
# LLM Setup (Groq)
# -------------------------------
def get_llm(model_id: str = None, temperature: float = None, max_tokens: int = None):
    if not config.GROQ_API_KEY:
        raise ValueError("Missing GROQ_API_KEY in .env")
    return ChatGroq(
        model_name=model_id or config.LLM_MODEL,
        groq_api_key=config.GROQ_API_KEY,
        temperature=config.LLM_TEMPERATURE if temperature is None else temperature,
        max_tokens=max_tokens or config.LLM_MAX_TOKENS,
    )


# -------------------------------
# Repository QnA prompt
# -------------------------------
QNA_PROMPT = PromptTemplate(
    input_variables=["context", "question"],
    template="""
Based on the following repository context, please answer the question.
Be specific and reference relevant code or files when appropriate.
If the context does not contain the answer, say so instead of guessing.

Repository Context:
{context}

Question: {question}
""",
)


def answer_query(query: str, chunks: List[dict], llm=None) -> str:
    """Ground the model on the retrieved chunks and return its answer text."""
    llm = llm or get_llm()
    chain = QNA_PROMPT | llm
    msg = chain.invoke({"context": format_context(chunks), "question": query})
    content = getattr(msg, "content", msg)
    if not isinstance(content, str):
        content = str(content) if content else ""
    if not content.strip():
        logger.warning("LLM returned an empty response")
        return NO_RESPONSE
    return content
