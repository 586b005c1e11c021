# AI Services Package
# Provider-neutral LLM completion, provider configuration and prompts
