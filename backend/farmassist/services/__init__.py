# Services Package
# Orchestration engine, provider adapter, response post-processing and progress streaming
