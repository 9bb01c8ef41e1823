"""
Secret lookup for model provider credentials.
"""

import os

GEMINI_KEY_VARIABLES = ("GEMINI_API_KEY", "GOOGLE_API_KEY")


def get_gemini_api_key() -> str:
    """Get the Gemini API key from the environment.

    Raises:
        KeyError: if none of the supported variables is set.
    """
    for variable in GEMINI_KEY_VARIABLES:
        value = os.environ.get(variable)
        if value:
            return value
    raise KeyError(f"Set one of {', '.join(GEMINI_KEY_VARIABLES)} to call Gemini")
