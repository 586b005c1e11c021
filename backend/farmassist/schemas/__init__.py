# Schemas Package
# Pydantic models shared by the services and the HTTP API
