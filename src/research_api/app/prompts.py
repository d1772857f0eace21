"""Task description sent to the engine for one competitor analysis."""

from __future__ import annotations

from textwrap import dedent

LANGUAGE_ALIASES = {
    "zh": "zh",
    "zh-cn": "zh",
    "chinese": "zh",
    "en": "en",
    "english": "en",
    "ja": "ja",
    "japanese": "ja",
}
LANGUAGE_NAMES = {
    "zh": "Chinese (Simplified)",
    "ja": "Japanese",
    "en": "English",
}

PERSONA_INSTRUCTIONS = {
    "pm": (
        "Adopt the perspective of a **Senior Product Manager**:\n"
        "- Emphasize feature differentiation, how well competitors solve user problems, and product positioning.\n"
        "- Pay special attention to: feature matrix, MVP scope, and what can be copied vs. what is defensible.\n"
        "- In the recommendations, clearly state what to build next and what NOT to build."
    ),
    "vc": (
        "Adopt the perspective of a **VC / Investor**:\n"
        "- Emphasize market size (TAM/SAM/SOM), business model, unit economics, and defensibility.\n"
        "- Focus on market structure: is this already a red ocean, or is there still room for new entrants?\n"
        "- In the recommendations, state whether this looks investable and what traction you would want to see."
    ),
    "growth": (
        "Adopt the perspective of a **Head of Growth / Operations**:\n"
        "- Emphasize acquisition channels, activation, retention, monetization, and growth loops.\n"
        "- Compare how each competitor acquires users, designs funnels, and prices their product.\n"
        "- In the recommendations, propose concrete growth experiments (A/B tests, referral ideas, pricing tests)."
    ),
    "tech": (
        "Adopt the perspective of a **Tech Lead / Engineering Manager**:\n"
        "- Emphasize tech stack, architecture complexity, AI capabilities, integration difficulty, and scalability.\n"
        "- Identify which capabilities likely require custom development vs. third-party services.\n"
        "- In the recommendations, outline a plausible technical approach and key technical risks."
    ),
}
DEFAULT_PERSONA_INSTRUCTION = "Analyze from the perspective of a general competitive intelligence analyst."

MODE_INSTRUCTIONS = {
    "quick": "You are in **QUICK** mode: favor concise, high-level summaries and 3-4 bullet points per competitor.",
    "deep": (
        "You are in **DEEP** mode: you may write longer, include tables and concrete examples, "
        'and aim for a "thorough desk research" feel.'
    ),
}

TOOL_GUIDANCE = dedent(
    """\
    **Tool Usage Recommendation: Prefer Firecrawl-style web tools when available**

    Before starting your analysis, if your environment allows tool calls, use the firecrawl_search
    tool to gather up-to-date competitor and market information. If tools are not available, fall
    back to reasonable inference based on existing knowledge.

    **Firecrawl Parameter Format (IMPORTANT)**:
    - The sources parameter MUST be an array of objects, NOT an array of strings
    - Correct format: sources: [{ "type": "web" }]
    - Wrong format: sources: ["web"]
    Example:
    {"query": "competitor analysis for this product idea", "sources": [{"type": "web"}], "limit": 5}"""
)

REPORT_SECTIONS = dedent(
    """\
    After the JSON, please provide:

    1. **Market Overview**: target market and industry, market size and growth trends, key segments
    2. **Direct Competitors**: 3-5 main direct competitors with background, key products, pricing,
       target customers, strengths and weaknesses, market share (if available)
    3. **Indirect Competitors**: alternative solutions and how they differ from the proposed idea
    4. **Competitive Advantages**: unique value proposition and differentiation strategies
    5. **Market Gaps & Opportunities**: unmet needs, competitor weak spots, innovation opportunities
    6. **Threats & Challenges**: barriers to entry, competitive responses, market risks
    7. **Strategic Recommendations**: go-to-market, positioning, key success factors

    Please use web search and available tools to gather current, accurate information about
    competitors and the market."""
)


def normalize_language(language: str | None) -> str:
    """Map a client language tag to `zh`, `ja` or `en` (the default)."""
    return LANGUAGE_ALIASES.get((language or "").strip().lower(), "en")


def _json_skeleton(persona: str | None, mode: str) -> str:
    return dedent(
        f"""\
        JSON_OUTPUT_START
        {{
          "persona_perspective": "{persona or 'general'}",
          "analysis_mode": "{mode}",
          "idea_summary": "One-sentence summary of the product idea",
          "target_users": ["segment 1", "segment 2"],
          "problem": ["key problem 1", "key problem 2"],
          "opportunities": ["opportunity 1", "opportunity 2"],
          "market_data": {{
            "market_size_current": "e.g. $61.5 billion",
            "market_size_projected": "e.g. $43.2 billion by 2032",
            "cagr": "e.g. 15.63%",
            "growth_timeline": [{{"year": 2024, "value": 18.82}}]
          }},
          "direct_competitors": [
            {{"name": "", "url": "", "target_users": "", "key_features": [],
              "pricing_summary": "", "differentiation": ""}}
          ],
          "adjacent_competitors": [{{"name": "", "url": "", "notes": ""}}]
        }}
        JSON_OUTPUT_END"""
    )


def build_research_task(
    idea: str,
    *,
    language: str = "en",
    mode: str = "quick",
    persona: str | None = None,
) -> str:
    lang_key = normalize_language(language)
    language_name = LANGUAGE_NAMES[lang_key]
    persona_instruction = PERSONA_INSTRUCTIONS.get(persona or "", DEFAULT_PERSONA_INSTRUCTION)

    parts = [
        "You are a competitive intelligence analyst. Analyze the following product idea and "
        "provide a comprehensive competitor analysis report.",
        persona_instruction,
        MODE_INSTRUCTIONS.get(mode, MODE_INSTRUCTIONS["quick"]),
        TOOL_GUIDANCE,
        "**CRITICAL LANGUAGE REQUIREMENT**:\n"
        f"- Provide your ENTIRE response (both JSON fields and detailed analysis) in {language_name}.\n"
        f"- ALL text fields MUST be in {language_name}.\n"
        "- Do NOT mix languages; keep the whole report consistent.\n"
        f"- Section headings and analysis sections must also be in {language_name}.",
        f"Product Idea: {idea}",
        "**CRITICAL**: You MUST start your response with a structured JSON output for "
        "visualization, then provide the detailed analysis.",
        "First, output the JSON data between these exact markers:\n" + _json_skeleton(persona, mode),
        REPORT_SECTIONS,
    ]
    return "\n\n".join(parts)
