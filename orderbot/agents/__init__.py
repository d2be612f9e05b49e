from orderbot.agents.orchestrator import OrderOrchestrator, create_orchestrator

__all__ = ["OrderOrchestrator", "create_orchestrator"]
