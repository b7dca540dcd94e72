"""Chat module — session-scoped streaming generations.

- ConversationStore:     per-session immutable message history
- compact():             token-budget trimming of a history
- CancellationRegistry:  session → in-flight GenerationHandle (single writer)
- DeliveryChannel:       transport-independent push sink (SSE, WebSocket)
- StreamOrchestrator:    ties the above together around the inference client
"""
