from typing import Dict

from pv_twin.framework.base_agent import BaseAgent


class AgentRegistry:
    """Engines in registration order; stopped in reverse."""

    def __init__(self):
        self.agents: Dict[str, BaseAgent] = {}

    def register(self, agent: BaseAgent):
        if agent.name in self.agents:
            raise ValueError(f"Agent {agent.name} already registered")
        self.agents[agent.name] = agent

    def start_all(self):
        for agent in self.agents.values():
            agent.start()

    def stop_all(self):
        for agent in reversed(list(self.agents.values())):
            if agent.running:
                agent.stop()
