from typing import Dict, Iterable, List, Optional

from socflow.core.config import settings
from socflow.services.agents.base import AnalysisAgent
from socflow.services.agents.behavioral_analysis import BehavioralAnalysisAgent
from socflow.services.agents.compliance_analysis import ComplianceAnalysisAgent
from socflow.services.agents.ioc_enrichment import IocEnrichmentAgent
from socflow.services.agents.mitre_mapping import MitreMappingAgent
from socflow.services.agents.network_analysis import NetworkAnalysisAgent
from socflow.services.agents.pattern_recognition import PatternRecognitionAgent
from socflow.services.agents.threat_intelligence import ThreatIntelligenceAgent
from socflow.services.agents.vulnerability_assessment import VulnerabilityAssessmentAgent
from socflow.services.llm_client import LLMClient

DEFAULT_AGENTS = [
    PatternRecognitionAgent,
    MitreMappingAgent,
    IocEnrichmentAgent,
    ThreatIntelligenceAgent,
    NetworkAnalysisAgent,
    BehavioralAnalysisAgent,
    VulnerabilityAssessmentAgent,
    ComplianceAnalysisAgent,
]


class AgentRegistry:
    """Ordered set of interchangeable analysis agents keyed by name."""

    def __init__(self, agents: Optional[Iterable[AnalysisAgent]] = None):
        self._agents: Dict[str, AnalysisAgent] = {}
        for agent in agents or []:
            self.register(agent)

    def register(self, agent: AnalysisAgent) -> None:
        if agent.name in self._agents:
            raise ValueError(f"agent {agent.name} already registered")
        self._agents[agent.name] = agent

    def unregister(self, name: str) -> None:
        self._agents.pop(name, None)

    def get(self, name: str) -> Optional[AnalysisAgent]:
        return self._agents.get(name)

    def names(self) -> List[str]:
        return list(self._agents.keys())

    def agents(self) -> List[AnalysisAgent]:
        return list(self._agents.values())

    def __len__(self) -> int:
        return len(self._agents)


def build_default_registry(
    enabled: Optional[List[str]] = None,
    llm_assist: Optional[bool] = None,
    llm: Optional[LLMClient] = None,
) -> AgentRegistry:
    enabled = enabled if enabled is not None else settings.ENABLED_AGENTS
    llm_assist = settings.AGENT_LLM_ASSIST if llm_assist is None else llm_assist
    if llm_assist and llm is None:
        llm = LLMClient()

    registry = AgentRegistry()
    for agent_cls in DEFAULT_AGENTS:
        if enabled and agent_cls.name not in enabled:
            continue
        registry.register(agent_cls(llm=llm, llm_assist=llm_assist))
    return registry
