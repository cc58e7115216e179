"""
Rich text formatting for MCP tool outputs.

Transforms API results and annotation state into chat-friendly text.
Uses subscript numbers for token indices and box drawing for structure.
Subject tokens are shown as [..] and object tokens as {..}.
"""

from typing import Optional

from .labels import LABEL_DESCRIPTIONS, LABEL_TITLES, SPAN_RULES, LabelKind, Span
from .traversal import MODE_TITLES, TraversalMode

# Subscript digit mapping
SUBSCRIPT_DIGITS = str.maketrans("0123456789", "₀₁₂₃₄₅₆₇₈₉")

# Label emoji mapping
LABEL_EMOJI = {
    LabelKind.FULL: "🟢",
    LabelKind.DOMAIN: "🔵",
    LabelKind.RANGE: "🟣",
    LabelKind.PROPERTY: "🟡",
    LabelKind.NONE: "⚪",
}


def subscript_number(n: int) -> str:
    """Convert a number to subscript digits."""
    return str(n).translate(SUBSCRIPT_DIGITS)


def label_emoji(kind) -> str:
    if kind is None:
        return "❓"
    return LABEL_EMOJI.get(LabelKind(kind), "❓")


def format_indexed_tokens(
    tokens: list[str],
    subject: Optional[Span] = None,
    obj: Optional[Span] = None,
) -> str:
    """
    Format tokens with subscript indices for display.

    Returns:
        Formatted string like "₀Berlin ₁is ₂the [₃capital] ₄of {₅Germany}"
    """
    if not tokens:
        return "(empty)"

    parts = []
    for i, token in enumerate(tokens):
        text = f"{subscript_number(i)}{token}"
        if subject is not None and subject.covers(i):
            text = f"[{text}]"
        if obj is not None and obj.covers(i):
            text = f"{{{text}}}"
        parts.append(text)
    return " ".join(parts)


def format_span(tokens: list[str], span: Optional[Span]) -> str:
    if span is None:
        return "(none)"
    words = " ".join(tokens[span.start:span.end + 1])
    return f"{span.start}-{span.end} \"{words}\""


def format_property_header(prop) -> list[str]:
    lines = [f"🔗 **{prop.name}**  ({prop.domain or '?'} → {prop.range or '?'})"]
    if prop.description:
        lines.append(f"   {prop.description}")
    return lines


def format_sentence_display(sentence, draft, progress: dict, prop=None) -> str:
    """
    Format the current sentence with the draft label for chat display.

    Shows position, labeled count, tokens with span highlights and the
    chosen label kind.
    """
    lines = []

    mode = TraversalMode(progress.get("mode", TraversalMode.ALL.value))
    lines.append(
        f"📋 Sentence {progress.get('position', 0)} of {progress.get('total', 0)}"
        f" ({MODE_TITLES[mode]})"
    )
    lines.append("═" * 50)

    if prop is not None:
        lines.extend(format_property_header(prop))
        lines.append("")

    if sentence is None:
        lines.append("No sentences to show.")
        lines.append("═" * 50)
        return "\n".join(lines)

    lines.append(f"📖 #{sentence.id}  (labels from all users: {sentence.label_count})")
    lines.append(f"   {sentence.text}")
    if draft is not None:
        lines.append(f"   {format_indexed_tokens(draft.tokens, draft.subject, draft.object)}")
        lines.append("")
        lines.append(f"🏷️ Label: {label_emoji(draft.kind)} {draft.kind.value if draft.kind else '(none)'}")
        lines.append(f"   Subject: {format_span(draft.tokens, draft.subject)}")
        lines.append(f"   Object:  {format_span(draft.tokens, draft.object)}")
        if draft.mode.value != "idle":
            lines.append(f"   ✏️ Picking {draft.mode.value} span")
        if draft.existing:
            lines.append("   (editing your saved label)")

    lines.append("─" * 50)
    lines.append(f"✅ Labeled by you: {progress.get('labeled', 0)}")
    return "\n".join(lines)


def format_property_list(properties: list, current_id: Optional[int] = None) -> str:
    """Format the property list with per-property progress."""
    lines = ["📚 **Properties**", "─" * 40]
    if not properties:
        lines.append("No properties available.")
        return "\n".join(lines)

    for prop in properties:
        marker = "▶" if prop.id == current_id else " "
        status = "✅" if prop.is_complete else "  "
        hidden = " (hidden)" if not prop.is_active else ""
        lines.append(
            f"{marker}{status} {prop.id}. {prop.name}{hidden}  "
            f"{prop.labeled}/{prop.sentence_count}"
        )
    return "\n".join(lines)


def format_save_result(result, progress: dict) -> str:
    """Format the outcome of a label save."""
    if result.issue is not None:
        return f"⚠️ {result.issue.message}"
    if result.error is not None:
        return format_error(result.error)

    label = result.label
    verb = "Saved" if result.created else "Updated"
    lines = [f"✅ **{verb}** {label_emoji(label.kind)} {label.kind.value} for sentence #{label.sentence_id}"]
    if result.counter is not None:
        lines.append(f"   label_count: {result.counter.label_count} ({result.counter.method})")
    lines.append(f"   Now at {progress.get('position', 0)} of {progress.get('total', 0)}")
    return "\n".join(lines)


def format_label_history(labels: list) -> str:
    """Format the user's labels, newest first as returned."""
    lines = [f"🗂️ **My Labels** ({len(labels)})", "─" * 40]
    if not labels:
        lines.append("No labels match.")
        return "\n".join(lines)

    for label in labels:
        text = label.sentence_text or ""
        if len(text) > 60:
            text = text[:60] + "..."
        lines.append(f"{label_emoji(label.kind)} #{label.sentence_id} {label.kind.value}: {text}")
    return "\n".join(lines)


def format_profile(profile: dict) -> str:
    stats = profile.get("stats", {})
    lines = [
        f"👤 **{profile.get('display_name') or profile.get('email')}**",
        "─" * 30,
        f"🏷️ Labels: {stats.get('labels', 0)} of {stats.get('sentences', 0)} sentences",
        f"📈 Overall progress: {stats.get('overall_progress', 0)}%",
        f"📂 Properties started: {stats.get('properties_started', 0)}",
        f"✅ Properties completed: {stats.get('properties_completed', 0)}",
    ]
    return "\n".join(lines)


def format_leaderboard(data: dict) -> str:
    """Format the label-count leaderboard."""
    lines = ["🏆 **Leaderboard**", "═" * 40]

    entries = data.get("entries", [])
    if not entries:
        lines.append("No rankings yet.")
        return "\n".join(lines)

    medals = ["🥇", "🥈", "🥉"]
    top = entries[0].get("total_labels", 0) or 1
    for i, entry in enumerate(entries):
        medal = medals[i] if i < 3 else f"{entry.get('rank', i + 1)}."
        count = entry.get("total_labels", 0)
        bar_length = round(count / top * 10)
        bar = "█" * bar_length + "░" * (10 - bar_length)
        you = " (you)" if entry.get("is_current_user") else ""
        lines.append(f"{medal} **{entry.get('display_name') or 'anonymous'}**{you}")
        lines.append(f"   {bar} {count} labels")

    lines.append(f"Annotators: {data.get('total_annotators', len(entries))}")
    return "\n".join(lines)


def format_admin_stats(stats: dict) -> str:
    lines = [
        "📊 **Labeling Statistics**",
        "─" * 30,
        f"Sentences: {stats.get('total_sentences', 0)}",
        f"Labeled: {stats.get('labeled_sentences', 0)} ({stats.get('coverage', 0)}% coverage)",
        "",
        "Redundancy:",
    ]
    for k, count in stats.get("redundancy", {}).items():
        lines.append(f"   ≥{k} labels: {count}")

    top_users = stats.get("top_users", [])
    if top_users:
        lines.append("")
        lines.append("Top contributors:")
        for i, user in enumerate(top_users):
            name = user.get("display_name") or user.get("email")
            lines.append(f"   {i + 1}. {name}: {user.get('count', 0)}")
    return "\n".join(lines)


def format_session_stats(stats: dict) -> str:
    """Format session statistics."""
    lines = ["📊 **Session Statistics**", "─" * 30]
    lines.append(f"✅ Labels saved: {stats.get('labels_saved', 0)}")
    lines.append(f"🎨 Theme: {stats.get('theme')}")
    lines.append(f"🗔 View: {stats.get('active_view')}")
    if stats.get("property_id") is not None:
        lines.append(f"🔗 Property: {stats['property_id']} ({stats.get('mode')})")
    lines.append(f"🕐 Started: {stats.get('session_started') or 'unknown'}")
    return "\n".join(lines)


def format_label_guide() -> str:
    """The labeling guide: one entry per kind with its span rules."""
    lines = ["🏷️ **Labeling Guide**", "─" * 40]
    lines.append("Given property p with domain D and range R, choose how well the sentence expresses p(D, R).")
    lines.append("")
    for kind in LabelKind:
        subject_rule, object_rule = SPAN_RULES[kind]
        lines.append(f"{label_emoji(kind)} **{kind.value}** {LABEL_TITLES[kind]}")
        lines.append(f"   {LABEL_DESCRIPTIONS[kind]}. Subject span {subject_rule}, object span {object_rule}.")
    lines.append("")
    lines.append("Pick a span: arm subject or object, click the first token, then the last.")
    return "\n".join(lines)


def format_error(message: str) -> str:
    """Format an error message."""
    return f"❌ **Error:** {message}"
