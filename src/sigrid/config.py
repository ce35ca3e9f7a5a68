# sigrid: Centralize environment-driven configuration constants.

import os

# OpenAI-compatible upstream
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY", "")
OPENAI_BASE_URL = os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1")

# Gateway deployments (base URL override plus its own key)
LLM_GATEWAY_URL = os.environ.get("LLM_GATEWAY_URL", "")
LLM_GATEWAY_API_KEY = os.environ.get("LLM_GATEWAY_API_KEY", "")

# Default model id override
AI_MODEL = os.environ.get("LLM_MODEL", "gpt-5-mini")

# HTTP timeout for one upstream request, seconds
HTTP_TIMEOUT = int(os.environ.get("SIGRID_HTTP_TIMEOUT", "600"))

# Tool loop cap per driver invocation
MAX_TOOL_ITERATIONS = int(os.environ.get("SIGRID_MAX_TOOL_ITERATIONS", "10"))

# Written into .sigrid/metadata.json
SIGRID_VERSION = os.environ.get("SIGRID_VERSION", "0.1.0")

# Per-workspace metadata directory name
SIGRID_DIR = ".sigrid"
