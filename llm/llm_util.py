from typing import List

from langchain_core.messages import HumanMessage
from langchain_core.prompts import PromptTemplate
from langchain_google_genai import ChatGoogleGenerativeAI, GoogleGenerativeAIEmbeddings
from util.secrets import get_gemini_api_key
from util.logging_util import setup_logger, log_llm_interaction, log_embedding_call
import time

logger = setup_logger(__name__)


def render_prompt(template_path: str, params: dict) -> str:
    """
    Renders a Jinja2 template file with the given parameters.

    Args:
        template_path: The absolute path to the Jinja2 template file.
        params: A dictionary of parameters to populate the template.

    Returns:
        The rendered prompt text.
    """
    with open(template_path, "r") as f:
        template_content = f.read()

    prompt = PromptTemplate.from_template(template_content, template_format="jinja2")
    return prompt.format(**params)


def get_llm_response(
    prompt: str,
    model_name: str = "gemini-2.5-flash",
    max_output_tokens: int = 8192,
    purpose: str = "completion",
) -> str:
    """
    Generates a response from the LLM for an already rendered prompt.

    Args:
        prompt: The prompt text.
        model_name: The name of the Gemini model to use.
        max_output_tokens: Upper bound on generated tokens.
        purpose: Label used when logging the interaction.

    Returns:
        The string response from the LLM.
    """
    start_time = time.time()

    llm = ChatGoogleGenerativeAI(
        model=model_name,
        google_api_key=get_gemini_api_key(),
        max_output_tokens=max_output_tokens,
    )

    response = llm.invoke([HumanMessage(content=prompt)])

    # Gemini returns content as a list of parts, extract the text
    response_content = response.content
    if isinstance(response_content, list):
        text_parts = [part.get('text', '') for part in response_content if isinstance(part, dict) and 'text' in part]
        response_content = ''.join(text_parts)

    duration_ms = (time.time() - start_time) * 1000
    log_llm_interaction(logger, purpose, prompt, response_content, model_name, duration_ms)

    return response_content


def get_embeddings(texts: List[str], model_name: str = "models/text-embedding-004") -> List[List[float]]:
    """
    Embeds a batch of texts, preserving input order.

    Args:
        texts: The texts to embed.
        model_name: The Gemini embedding model to use.

    Returns:
        One vector per input text.
    """
    start_time = time.time()

    embedder = GoogleGenerativeAIEmbeddings(
        model=model_name,
        google_api_key=get_gemini_api_key(),
    )
    vectors = embedder.embed_documents(list(texts))

    duration_ms = (time.time() - start_time) * 1000
    log_embedding_call(logger, model_name, len(texts), duration_ms)

    return [list(v) for v in vectors]
