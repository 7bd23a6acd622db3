"""
OpenAI chat-completions response provider.

Handles:
- Short conversational replies to meeting transcripts
- Runtime system prompt changes
- Candidate evaluation against a job description (interview sessions)
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

import aiohttp

from meetbot.config import ProviderConfig, get_config

logger = logging.getLogger(__name__)

EVALUATION_MODEL = "gpt-4o-mini"

EVALUATION_PROMPT = """Job Description:

{job_description}

Candidate Responses:

{interview_text}

Evaluate the candidate's responses based on the following criteria:

- Depth and clarity of understanding of the concepts the role requires
- Use of tangible, relevant examples
- Demonstrated hands-on experience with the technologies in the job description
- Ability to solve complex problems as described in the role
- Alignment between their experience and the job requirements

Your output should follow this EXACT format:

REASONING:
[A brief analysis (2-3 sentences) of key strengths, gaps and overall assessment]

DECISION:
[Either "suitable" or "not_suitable"]

RESPONSE:
[A short, polite message to the candidate communicating the decision]"""

NOT_SUITABLE_RESPONSE = (
    "Thank you for your responses. However, based on the answers provided, it appears there may be "
    "a misalignment with the requirements of the role we're seeking to fill. At this time, we cannot "
    "extend an offer. We appreciate your time and effort and wish you the best in your future endeavors."
)
SUITABLE_RESPONSE = (
    "Thank you for your thoughtful responses. Based on your answers, it appears that your skills, "
    "experience, and understanding align well with the requirements of the role. "
    "We will be in touch with the next steps."
)


@dataclass
class CandidateEvaluation:
    """Parsed result of an interview evaluation."""

    reasoning: str
    decision: str  # "suitable" or "not_suitable"
    response: str

    @property
    def suitable(self) -> bool:
        return self.decision == "suitable"


def parse_evaluation(text: str) -> CandidateEvaluation:
    """Parse the REASONING / DECISION / RESPONSE sections of an evaluation."""
    reasoning_match = re.search(r"REASONING:\s*(.*?)(?=DECISION:|$)", text, re.S)
    decision_match = re.search(r"DECISION:\s*(suitable|not_suitable)", text, re.I)
    response_match = re.search(r"RESPONSE:\s*(.*?)$", text, re.S)

    reasoning = reasoning_match.group(1).strip() if reasoning_match else ""
    decision = "suitable" if decision_match and decision_match.group(1).lower() == "suitable" else "not_suitable"
    response = response_match.group(1).strip() if response_match else ""

    if not response:
        response = SUITABLE_RESPONSE if decision == "suitable" else NOT_SUITABLE_RESPONSE
    return CandidateEvaluation(
        reasoning=reasoning or "No reasoning provided",
        decision=decision,
        response=response,
    )


class OpenAIResponder:
    """ResponseProvider backed by the OpenAI chat completions API."""

    def __init__(self, config: Optional[ProviderConfig] = None, system_prompt: Optional[str] = None):
        self.config = config or get_config().providers
        self.system_prompt = system_prompt or self.config.system_prompt

    def set_system_prompt(self, prompt: str) -> None:
        self.system_prompt = prompt
        logger.info("[LLM] System prompt updated")

    async def _complete(self, messages: list[dict], model: str, temperature: float, max_tokens: int) -> str:
        if not self.config.openai_api_key:
            raise RuntimeError("OPENAI_API_KEY is not configured")

        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        headers = {"Authorization": f"Bearer {self.config.openai_api_key}"}

        async with aiohttp.ClientSession() as session:
            async with session.post(
                f"{self.config.openai_url}/chat/completions",
                json=payload,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_seconds),
            ) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise RuntimeError(f"OpenAI request failed: {resp.status} {body[:200]}")
                data = await resp.json()

        choices = data.get("choices") or []
        if not choices:
            return ""
        return ((choices[0].get("message") or {}).get("content") or "").strip()

    async def respond(self, prompt: str) -> str:
        """Generate a brief conversational reply to ``prompt``."""
        logger.info(f"[LLM] Generating response for: {prompt[:80]}")
        text = await self._complete(
            [
                {"role": "system", "content": self.system_prompt},
                {"role": "user", "content": prompt},
            ],
            model=self.config.llm_model,
            temperature=self.config.llm_temperature,
            max_tokens=self.config.llm_max_tokens,
        )
        logger.debug(f"[LLM] Response: {text}")
        return text

    async def evaluate_candidate(self, job_description: str, interview_text: str) -> CandidateEvaluation:
        """
        Evaluate interview answers against a job description.

        Args:
            job_description: The role being hired for
            interview_text: The candidate's transcribed answers

        Returns:
            CandidateEvaluation with reasoning, decision and a message for the candidate
        """
        prompt = EVALUATION_PROMPT.format(job_description=job_description, interview_text=interview_text)
        text = await self._complete(
            [{"role": "user", "content": prompt}],
            model=EVALUATION_MODEL,
            temperature=0.3,
            max_tokens=500,
        )
        evaluation = parse_evaluation(text)
        logger.info(f"[LLM] Candidate evaluation decision: {evaluation.decision}")
        return evaluation
