"""Prompt builders for the inference oracle.

Each builder documents the temperature it is sent with and the response
schema (in `featuregraph.pipeline.schemas`) its answer is validated against.
"""

from typing import Sequence


def build_feature_hypothesis_prompt(evidence_items: Sequence[str]) -> str:
    """Ask which user-facing feature a cluster of evidence describes.

    Temperature 0.3. Response schema: `FeatureHypothesis`.
    """
    evidence = "\n".join(f"{i + 1}. {item}" for i, item in enumerate(evidence_items))
    return f"""
Given these evidence items from an OTT platform, identify the user-facing feature they describe.

Evidence:
{evidence}

Analyze the evidence and infer the feature. Return JSON:
{{
  "feature_name": "Clear, concise feature name (e.g., 'User Login')",
  "description": "Brief description of what users can do",
  "confidence": 0.0-1.0,
  "reasoning": "Why these evidence items relate to this feature"
}}

Guidelines:
- Feature name should be user-facing (not technical implementation)
- Confidence based on evidence strength and consistency
- Reasoning should explain the connection between evidence items
- Focus on WHAT users can do, not HOW it's implemented

Example:
{{
  "feature_name": "User Login",
  "description": "Users can authenticate with email and password to access their account",
  "confidence": 0.85,
  "reasoning": "Evidence includes login endpoint, email/password inputs, and authentication requirements"
}}
""".strip()


def build_feature_similarity_prompt(name1: str, description1: str, name2: str, description2: str) -> str:
    """Ask whether two features describe the same capability.

    Temperature 0.2. Response schema: `DuplicateJudgement`.
    """
    return f"""
Compare these two features and determine if they represent the same capability.

Feature 1:
Name: {name1}
Description: {description1}

Feature 2:
Name: {name2}
Description: {description2}

Return JSON:
{{
  "is_duplicate": true/false,
  "similarity_score": 0.0-1.0,
  "reasoning": "Why they are/aren't the same feature",
  "recommended_merge": "feature1" | "feature2" | "combine"
}}

Guidelines:
- is_duplicate: true if they describe the same user capability
- similarity_score: 1.0 = identical, 0.5 = related, 0.0 = unrelated
- If duplicate, recommend which name/description to keep or suggest combination
""".strip()


def build_classification_prompt(name: str, description: str) -> str:
    """Ask whether a feature is an epic, story or task.

    Temperature 0.2. Response schema: `ClassificationJudgement`.
    """
    return f"""
Classify this OTT platform feature as either an "epic", "story", or "task".

DEFINITIONS:
- **Epic**: Broad functionality domain with multiple related features
  - Examples: "User Authentication", "Content Management", "Payment Processing"
  - Indicators: Multiple verbs, domain nouns, system-wide scope

- **Story**: Specific user-facing functionality or action
  - Examples: "User Login", "Video Playback", "Add to Watchlist"
  - Indicators: Single action verb, specific functionality, user-facing

- **Task**: Implementation detail or technical subtask
  - Examples: "Create login form", "Add validation", "Write unit tests"
  - Indicators: Very specific, technical focus, implementation-level

FEATURE TO CLASSIFY:
Name: "{name}"
Description: "{description}"

INSTRUCTIONS:
1. Analyze the scope (broad domain vs specific action vs implementation detail)
2. Count implicit features (if name suggests multiple features, it's an epic)
3. Check action verbs (multiple verbs = epic, single verb = story)
4. Consider user perspective (epic = "I need auth system", story = "I can log in")

OUTPUT (JSON):
{{
  "feature_type": "epic|story|task",
  "reasoning": "Why this classification is correct",
  "indicators": ["indicator 1", "indicator 2", "indicator 3"]
}}

EXAMPLES:
- "User Authentication" -> epic (broad domain: login + logout + register + reset)
- "User Login" -> story (specific action within auth domain)
- "Create login form component" -> task (implementation detail)
- "Content Discovery" -> epic (broad: search + browse + filter + recommend)
- "Search Content" -> story (specific action within discovery)
""".strip()


def build_epic_synthesis_prompt(epic_names: Sequence[str], story_names: Sequence[str]) -> str:
    """Ask the oracle to place every story under an existing or new epic.

    Temperature 0.2. Response schema: `EpicSynthesis`.
    """
    epic_list = "\n".join(f'- "{name}"' for name in epic_names) if epic_names else "(none)"
    story_list = "\n".join(f'- "{name}"' for name in story_names)
    return f"""
You are organizing OTT platform features into a hierarchy. Every story MUST have a parent epic.

EXISTING EPICS:
{epic_list}

STORIES TO ASSIGN:
{story_list}

INSTRUCTIONS:
1. Assign each story to the most appropriate existing epic.
2. If a story does NOT fit any existing epic, propose a NEW broad epic for it.
3. New epics should be broad functional domains (e.g., "User Authentication", "Content Discovery", "Navigation & Layout").
4. Group multiple related orphan stories under the same new epic when possible.
5. Every story MUST appear in exactly one assignment.

OUTPUT (JSON):
{{
  "assignments": [
    {{ "story": "exact story name", "parent_epic": "exact epic name (existing or new)" }}
  ],
  "new_epics": [
    {{ "name": "New Epic Name", "description": "Brief description of this functional domain" }}
  ]
}}

RULES:
- "story" must exactly match one of the story names listed above
- "parent_epic" must exactly match an existing epic name OR a name from "new_epics"
- Every story in the list above MUST appear in "assignments"
- Only propose new epics when no existing epic is a reasonable fit
- Prefer fewer, broader new epics over many narrow ones
""".strip()


def build_hierarchy_prompt(candidate_name: str, parent_name: str) -> str:
    """Ask whether one feature is a child of another (pairwise fallback).

    Temperature 0.2. Response schema: `ParentChildJudgement`.
    """
    return f"""
Analyze if Feature A is a CHILD (subset/component) of Feature B in an OTT platform.

DEFINITIONS:
- **Child relationship (is_child_of = true)**:
  - Feature A is a SPECIFIC ACTION within Feature B's domain
  - Feature A is a COMPONENT of Feature B
  - Feature A CANNOT exist independently of Feature B's context
  - Examples:
    * "User Login" is child of "User Authentication"
    * "Video Playback Controls" is child of "Video Playback"
    * "Search Results Sorting" is child of "Search"

- **Not a child (is_child_of = false)**:
  - Feature A is UNRELATED to Feature B
  - Feature A is a SIBLING (same level, different domain)
  - Feature A is actually the PARENT of Feature B
  - Examples:
    * "User Login" is NOT child of "Content Discovery"
    * "Payment Processing" is NOT child of "User Authentication"
    * "Video Playback" is NOT child of "Video Player Controls" (reversed)

FEATURES:
Feature A (candidate): "{candidate_name}"
Feature B (potential parent): "{parent_name}"

CONFIDENCE LEVELS:
- 0.9-1.0: Obvious parent-child (Login within Authentication)
- 0.7-0.89: Strong relationship (Playback Controls within Video Playback)
- 0.5-0.69: Weak relationship (possibly sibling, not parent-child)
- 0-0.49: Unrelated or reversed

OUTPUT (JSON):
{{
  "is_child_of": true|false,
  "confidence": 0.0-1.0,
  "reasoning": "Why Feature A is/isn't a child of Feature B",
  "recommended_type": "story|task"
}}

IMPORTANT:
- If Feature A is BROADER than Feature B, return is_child_of=false (it's the parent!)
- If features are SIBLINGS (same level), return is_child_of=false
- Only return true if A is genuinely a SUBSET of B
""".strip()
