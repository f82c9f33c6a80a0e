from typing import List, Optional

MAX_DIFF_CHARS = 8000
MAX_SNIPPET_CHARS = 1500


def _truncate_middle(content: str, limit: int, marker: str) -> str:
    if len(content) <= limit:
        return content
    half = limit // 2
    return content[:half] + f"\n\n{marker}\n\n" + content[-half:]


def build_review_prompt(
    diff_content: str,
    file_path: Optional[str],
    language: Optional[str],
    snippets: List[str],
) -> str:
    """Assemble the generation prompt: instructions, retrieved context, diff."""
    diff_content = _truncate_middle(diff_content, MAX_DIFF_CHARS, "// ... diff truncated ...")

    context = ""
    if snippets:
        blocks = []
        for i, snippet in enumerate(snippets, start=1):
            snippet = _truncate_middle(snippet, MAX_SNIPPET_CHARS, "...")
            blocks.append(f"### Prior review {i}\n{snippet}")
        context = (
            "Previous reviews of similar changes in this project "
            "(use them for consistency, do not copy blindly):\n\n"
            + "\n\n".join(blocks)
            + "\n\n"
        )

    return (
        "You are a senior software engineer and code reviewer.\n"
        "Review the following diff for correctness, security, performance, "
        "maintainability and documentation. Focus on added lines; also "
        "consider the implications of removed lines.\n"
        "Return ONLY a JSON object with this schema (no extra text):\n"
        "{"
        "\"summary\": string, "
        "\"issues\": [{\"line\": number|null, "
        "\"severity\": \"critical\"|\"major\"|\"minor\", "
        "\"message\": string}], "
        "\"confidence\": number between 0 and 1"
        "}\n\n"
        f"{context}"
        f"File: {file_path or 'unknown'}\n"
        f"Language: {language or 'unknown'}\n\n"
        "Diff:\n"
        f"{diff_content}"
    )
