from __future__ import annotations

import os
from dataclasses import dataclass

from crewai import LLM

from research_orchestrator.gateway import GatewayResult, ProviderChain


@dataclass(frozen=True)
class LLMRuntimeConfig:
    models: tuple[str, ...]
    timeout_sec: int
    max_retries: int
    temperature: float
    source: str


def load_llm_runtime_config() -> LLMRuntimeConfig:
    models_default = "openai/gpt-4o-mini,gemini/gemini-2.0-flash"
    timeout_default = 120
    max_retries_default = 2
    temp_default = 0.2

    raw_models = os.getenv("ANALYSIS_MODELS", models_default)
    models = tuple(m.strip() for m in raw_models.split(",") if m.strip())
    if not models:
        models = tuple(models_default.split(","))
    timeout_sec = int(os.getenv("ANALYSIS_LLM_TIMEOUT_SEC", str(timeout_default)))
    max_retries = int(os.getenv("ANALYSIS_LLM_MAX_RETRIES", str(max_retries_default)))
    temperature = float(os.getenv("ANALYSIS_LLM_TEMPERATURE", str(temp_default)))

    source = "env:ANALYSIS_MODELS" if "ANALYSIS_MODELS" in os.environ else "default"

    return LLMRuntimeConfig(
        models=models,
        timeout_sec=max(timeout_sec, 5),
        # Provider-level retries stay low; the chain and the queue handle the rest.
        max_retries=max(max_retries, 0),
        temperature=temperature,
        source=source,
    )


def route_label(model_name: str) -> str:
    low = model_name.lower()
    if low.startswith("ollama/"):
        return "local"
    if "gemini" in low:
        return "gemini"
    if low.startswith("openai/") or low.startswith("gpt"):
        return "openai"
    return "other"


def build_llm(model_name: str, cfg: LLMRuntimeConfig) -> LLM:
    base_url = None
    if model_name.lower().startswith("ollama/"):
        base_url = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")

    return LLM(
        model=model_name,
        temperature=cfg.temperature,
        timeout=cfg.timeout_sec,
        max_retries=cfg.max_retries,
        base_url=base_url,
    )


class LLMAnalysisProvider:
    def __init__(self, model_name: str, cfg: LLMRuntimeConfig) -> None:
        self.name = model_name
        self.route = route_label(model_name)
        self._cfg = cfg
        self._llm: LLM | None = None

    def generate_analysis(self, prompt: str) -> GatewayResult:
        try:
            if self._llm is None:
                self._llm = build_llm(self.name, self._cfg)
            text = self._llm.call(prompt)
        except Exception as exc:
            return GatewayResult.from_exception(exc, source=self.name)
        if not text or not str(text).strip():
            return GatewayResult.failure("empty analysis response", source=self.name)
        return GatewayResult.success({"text": str(text), "model": self.name}, source=self.name)


def build_analysis_chain(cfg: LLMRuntimeConfig | None = None) -> ProviderChain:
    cfg = cfg or load_llm_runtime_config()
    return ProviderChain([LLMAnalysisProvider(model, cfg) for model in cfg.models])
