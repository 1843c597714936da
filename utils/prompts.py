"""
Prompt builders for the LLM stages.

Each builder takes a frozen parameter object and returns the prompt string;
none of them touch the shared store or call the LLM, so they can be checked in
isolation. Non-English output adds translation instructions.
"""

from dataclasses import dataclass
from typing import Optional


def _foreign(language: str) -> Optional[str]:
    """Capitalized language name, or None for English."""
    lang = (language or "english").strip().lower()
    return None if lang == "english" else lang.capitalize()


@dataclass(frozen=True)
class ChapterRef:
    number: int
    title: str
    filename: str


@dataclass(frozen=True)
class AbstractionPromptParams:
    project_name: str
    file_context: str
    file_listing: str
    max_abstraction_num: int = 10
    language: str = "english"


@dataclass(frozen=True)
class RelationshipPromptParams:
    project_name: str
    abstraction_listing: str
    context: str
    language: str = "english"


@dataclass(frozen=True)
class ChapterOrderPromptParams:
    project_name: str
    abstraction_listing: str
    context: str
    language: str = "english"


@dataclass(frozen=True)
class ChapterPromptParams:
    project_name: str
    chapter_number: int
    name: str
    description: str
    file_context: str
    chapter_listing: str
    previous_chapter: Optional[ChapterRef] = None
    next_chapter: Optional[ChapterRef] = None
    language: str = "english"


def build_abstraction_prompt(params: AbstractionPromptParams) -> str:
    lang = _foreign(params.language)
    language_instruction = ""
    hint = ""
    if lang:
        language_instruction = (
            f"IMPORTANT: Generate the `name` and `description` for each abstraction in **{lang}** language. "
            "Do NOT use English for these fields.\n\n"
        )
        hint = f" (value in {lang})"
    n = params.max_abstraction_num

    return f"""For the project `{params.project_name}`:

Codebase Context:
{params.file_context}

{language_instruction}Analyze the codebase context.
Identify the top 5-{n} core most important abstractions to help those new to the codebase.

For each abstraction, provide:
1. A concise `name`{hint}.
2. A beginner-friendly `description` explaining what it is with a simple analogy, in around 100 words{hint}.
3. A list of relevant `file_indices` (integers) using the format `idx # path/comment`.

List of file indices and paths present in the context:
{params.file_listing}

Format the output as a YAML list of dictionaries:

```yaml
- name: |
    Query Processing{hint}
  description: |
    Explains what the abstraction does.
    It's like a central dispatcher routing requests.{hint}
  file_indices:
    - 0 # path/to/file1.py
    - 3 # path/to/related.py
- name: |
    Query Optimization{hint}
  description: |
    Another core concept, similar to a blueprint for objects.{hint}
  file_indices:
    - 5 # path/to/another.js
# ... up to {n} abstractions
```"""


def build_relationship_prompt(params: RelationshipPromptParams) -> str:
    lang = _foreign(params.language)
    language_instruction = ""
    lang_hint = ""
    list_lang_note = ""
    if lang:
        language_instruction = (
            f"IMPORTANT: Generate the `summary` and relationship `label` fields in **{lang}** language. "
            "Do NOT use English for these fields.\n\n"
        )
        lang_hint = f" (in {lang})"
        list_lang_note = f" (Names might be in {lang})"

    return f"""Based on the following abstractions and relevant code snippets from the project `{params.project_name}`:

List of Abstraction Indices and Names{list_lang_note}:
{params.abstraction_listing}

Context (Abstractions, Descriptions, Code):
{params.context}

{language_instruction}Please provide:
1. A high-level `summary` of the project's main purpose and functionality in a few beginner-friendly sentences{lang_hint}. Use markdown formatting with **bold** and *italic* text to highlight important concepts.
2. A list (`relationships`) describing the key interactions between these abstractions. For each relationship, specify:
   - `from_abstraction`: Index of the source abstraction (e.g., `0 # AbstractionName1`)
   - `to_abstraction`: Index of the target abstraction (e.g., `1 # AbstractionName2`)
   - `label`: A brief label for the interaction **in just a few words**{lang_hint} (e.g., "Manages", "Inherits", "Uses").
   Ideally the relationship should be backed by one abstraction calling or passing parameters to another.
   Simplify the relationship and exclude those non-important ones.

IMPORTANT: Make sure EVERY abstraction is involved in at least ONE relationship (either as source or target).

Format the output as YAML:

```yaml
summary: |
  A brief, simple explanation of the project{lang_hint}.
  Can span multiple lines with **bold** and *italic* for emphasis.
relationships:
  - from_abstraction: 0 # AbstractionName1
    to_abstraction: 1 # AbstractionName2
    label: "Manages"{lang_hint}
  - from_abstraction: 2 # AbstractionName3
    to_abstraction: 0 # AbstractionName1
    label: "Provides config"{lang_hint}
  # ... other relationships
```

Now, provide the YAML output:
"""


def build_chapter_order_prompt(params: ChapterOrderPromptParams) -> str:
    lang = _foreign(params.language)
    list_lang_note = f" (Names might be in {lang})" if lang else ""
    project = params.project_name

    return f"""Given the following project abstractions and their relationships for the project `{project}`:

Abstractions (Index # Name){list_lang_note}:
{params.abstraction_listing}

Context about relationships and project summary:
{params.context}

If you are going to make a tutorial for `{project}`, what is the best order to explain these abstractions, from first to last?
Ideally, first explain those that are the most important or foundational, perhaps user-facing concepts or entry points. Then move to more detailed, lower-level implementation details or supporting concepts.

Output the ordered list of abstraction indices, including the name in a comment for clarity. Use the format `idx # AbstractionName`.

```yaml
- 2 # FoundationalConcept
- 0 # CoreClassA
- 1 # CoreClassB (uses CoreClassA)
- ...
```

Now, provide the YAML output:
"""


def build_chapter_content_prompt(params: ChapterPromptParams) -> str:
    """
    Prompt for one chapter. Only chapters after the first get a section naming
    the preceding chapter and an instruction to open with a transition from it.
    """
    lang = _foreign(params.language)
    num = params.chapter_number
    name = params.name
    notes = {
        "instruction": "",
        "concept": "",
        "structure": "",
        "mermaid": "",
        "code_comment": "",
        "link": "",
        "tone": "",
    }
    language_instruction = ""
    if lang:
        language_instruction = (
            f"IMPORTANT: Write this ENTIRE tutorial chapter in **{lang}**. Some input context (like concept name, "
            f"description, chapter list) might already be in {lang}, but you MUST translate ALL other generated "
            f"content including explanations, examples, technical terms, and potentially code comments into {lang}. "
            "DO NOT use English anywhere except in code syntax, required proper nouns, or when specified. "
            f"The entire output MUST be in {lang}.\n\n"
        )
        notes = {
            "instruction": f" (in {lang})",
            "concept": f" (Note: Provided in {lang})",
            "structure": f" (Note: Chapter names might be in {lang})",
            "mermaid": f" (Use {lang} for labels/text if appropriate)",
            "code_comment": f" (Translate to {lang} if possible, otherwise keep minimal English for clarity)",
            "link": f" (Use the {lang} chapter title from the structure above)",
            "tone": f" (appropriate for {lang} readers)",
        }

    sections = [
        f'{language_instruction}Write a very beginner-friendly tutorial chapter (in Markdown format) for the project '
        f'`{params.project_name}` about the concept: "{name}". This is Chapter {num}.',
        f"Concept Details{notes['concept']}:\n- Name: {name}\n- Description:\n{params.description}",
        f"Complete Tutorial Structure{notes['structure']}:\n{params.chapter_listing}",
    ]
    prev = params.previous_chapter
    if prev is not None:
        sections.append(
            f"Previous chapter: Chapter {prev.number}: {prev.title} ({prev.filename}). "
            "This chapter continues directly from it."
        )
    sections.append(
        "Relevant Code Snippets (Code itself remains unchanged):\n"
        + (params.file_context or "No specific code snippets provided for this abstraction.")
    )

    instructions = [f"- Start with a clear heading (e.g., `# Chapter {num}: {name}`). Use the provided concept name."]
    if prev is not None:
        instructions.append(
            f"- Begin with a brief transition from the previous chapter{notes['instruction']}, "
            f"referencing it with a proper Markdown link: [{prev.title}]({prev.filename}){notes['link']}."
        )
    instructions += [
        f"- Begin with a high-level motivation explaining what problem this abstraction solves{notes['instruction']}. "
        "Start with a central use case as a concrete example. The whole chapter should guide the reader to "
        "understand how to solve this use case. Make it very minimal and friendly to beginners.",
        "- If the abstraction is complex, break it down into key concepts. Explain each concept one-by-one in a "
        f"very beginner-friendly way{notes['instruction']}.",
        f"- Explain how to use this abstraction to solve the use case{notes['instruction']}. Give example inputs and "
        "outputs for code snippets (if the output isn't values, describe at a high level what will happen"
        f"{notes['instruction']}).",
        "- Each code block should be BELOW 10 lines! If longer code blocks are needed, break them down into smaller "
        "pieces and walk through them one-by-one. Aggressively simplify the code to make it minimal. Use comments"
        f"{notes['code_comment']} to skip non-important implementation details. Each code block should have a "
        f"beginner friendly explanation right after it{notes['instruction']}.",
        "- Describe the internal implementation to help understand what's under the hood"
        f"{notes['instruction']}. First provide a non-code or code-light walkthrough on what happens step-by-step "
        "when the abstraction is called. It's recommended to use a simple sequenceDiagram with a dummy example - "
        "keep it minimal with at most 5 participants to ensure clarity. If participant name has space, use: "
        f"`participant QP as Query Processing`.{notes['mermaid']}",
        "- Then dive deeper into code for the internal implementation with references to files. Provide example "
        f"code blocks, but make them similarly simple and beginner-friendly{notes['instruction']}.",
        "- IMPORTANT: When you need to refer to other core abstractions covered in other chapters, ALWAYS use "
        "proper Markdown links like this: [Chapter Title](filename.md). Use the Complete Tutorial Structure above "
        f"to find the correct filename and the chapter title{notes['link']}.",
        f"- Use mermaid diagrams to illustrate complex concepts (```mermaid``` format).{notes['mermaid']}",
        f"- Heavily use analogies and examples throughout{notes['instruction']} to help beginners understand.",
    ]
    nxt = params.next_chapter
    if nxt is not None:
        instructions.append(
            f"- End the chapter with a brief conclusion that summarizes what was learned{notes['instruction']} "
            f"and leads into the next chapter with a proper Markdown link: [{nxt.title}]({nxt.filename}){notes['link']}."
        )
    else:
        instructions.append(
            "- This is the last chapter. End with a brief conclusion that summarizes what was learned across the "
            f"tutorial{notes['instruction']}."
        )
    instructions += [
        f"- Ensure the tone is welcoming and easy for a newcomer to understand{notes['tone']}.",
        "- Output *only* the Markdown content for this chapter.",
    ]
    sections.append(
        f"Instructions for the chapter (Generate content in {lang or 'English'} unless specified otherwise):\n"
        + "\n".join(instructions)
    )
    sections.append("Now, directly provide a super beginner-friendly Markdown output (DON'T need ```markdown``` tags):\n")
    return "\n\n".join(sections)
