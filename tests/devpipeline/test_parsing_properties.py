"""Property-based tests for the comment and status string formats.

Every format written to the tracker is read back by a later agent run or
admin action, so formatting followed by parsing must recover the original
values.

Testing Configuration:
- Library: Hypothesis (Python)
- Minimum iterations: 100 per property test
"""

from typing import Dict, List, Union

from hypothesis import given, settings, strategies as st

from src.devpipeline.parsing.agent_output import (
    REVIEW_APPROVED,
    REVIEW_REQUEST_CHANGES,
    parse_review_decision,
)
from src.devpipeline.parsing.clarification import (
    format_clarification_comment,
    parse_clarification_comment,
)
from src.devpipeline.parsing.decision import (
    DECISION_FOOTER,
    format_decision_comment,
    generate_decision_token,
    parse_decision,
    validate_decision_token,
)
from src.devpipeline.parsing.phases import (
    format_phases_comment,
    parse_phases_from_comment,
)
from src.devpipeline.state.machine import format_phase_string, parse_phase_string
from src.devpipeline.state.models import (
    ClarificationOption,
    ClarificationQuestion,
    Decision,
    DecisionOption,
    ImplementationPhase,
    MetadataFieldConfig,
    RoutingConfig,
)


# =============================================================================
# Hypothesis Strategies
# =============================================================================


def words(max_size: int = 30) -> st.SearchStrategy[str]:
    """Single-line text that starts and ends with a letter."""
    return st.from_regex(r"[A-Za-z]([A-Za-z ]{0,%d}[A-Za-z])?" % max_size, fullmatch=True)


@st.composite
def implementation_phases(draw: st.DrawFn) -> List[ImplementationPhase]:
    """Generate 2-6 sequential phases with at least one file each."""
    count = draw(st.integers(min_value=2, max_value=6))
    phases = []
    for order in range(1, count + 1):
        files = draw(
            st.lists(
                st.from_regex(r"[a-z]{1,8}(/[a-z]{1,8}){0,2}\.(py|ts|md)", fullmatch=True),
                min_size=1,
                max_size=4,
            )
        )
        phases.append(
            ImplementationPhase(
                order=order,
                name=draw(words(20)),
                description=draw(words(60)),
                files=files,
                estimated_size=draw(st.sampled_from(["S", "M"])),
            )
        )
    return phases


DECISION_FIELDS = [
    MetadataFieldConfig(key="complexity", label="Complexity", type="badge"),
    MetadataFieldConfig(key="files", label="Files Affected", type="file-list"),
    MetadataFieldConfig(key="destination", label="Destination", type="tag"),
]

file_paths = st.from_regex(r"[a-z]{1,8}(/[a-z]{1,8}){0,2}\.(py|ts|md)", fullmatch=True)


@st.composite
def option_metadata(draw: st.DrawFn, schema: List[MetadataFieldConfig]) -> Dict[str, Union[str, List[str]]]:
    """Values for a subset of the schema; text values may be empty."""
    metadata: Dict[str, Union[str, List[str]]] = {}
    for field in schema:
        if not draw(st.booleans()):
            continue
        if field.type == "file-list":
            metadata[field.key] = draw(st.lists(file_paths, max_size=3))
        else:
            metadata[field.key] = draw(st.one_of(st.just(""), words(20)))
    return metadata


@st.composite
def decisions(draw: st.DrawFn) -> Decision:
    """Generate a decision with a mixed metadata schema and routing."""
    count = draw(st.integers(min_value=1, max_value=5))
    recommended = draw(st.integers(min_value=0, max_value=count))
    schema = draw(st.lists(st.sampled_from(DECISION_FIELDS), unique_by=lambda f: f.key, max_size=3))
    descriptions = st.one_of(
        st.just(""),
        words(60),
        st.lists(words(40), min_size=2, max_size=3).map("\n".join),
    )
    options = [
        DecisionOption(
            id=f"opt{index}",
            title=draw(words(25)),
            description=draw(descriptions),
            is_recommended=index == recommended,
            metadata=draw(option_metadata(schema)),
        )
        for index in range(1, count + 1)
    ]
    return Decision(
        agent_id=draw(st.from_regex(r"[a-z][a-z-]{0,15}", fullmatch=True)),
        decision_type=draw(st.sampled_from(["bug-fix", "design-selection", "approach"])),
        context=draw(words(80)),
        options=options,
        metadata_schema=schema,
        routing=RoutingConfig(
            metadata_key="destination",
            status_map={"implementation": "Ready for development"},
        ),
    )


@st.composite
def clarification_questions(draw: st.DrawFn) -> List[ClarificationQuestion]:
    """Generate 1-3 questions with 1-4 options each."""
    questions = []
    for _ in range(draw(st.integers(min_value=1, max_value=3))):
        option_count = draw(st.integers(min_value=1, max_value=4))
        options = [
            ClarificationOption(
                label=draw(words(20)),
                bullets=draw(st.lists(words(30), max_size=3)),
                is_recommended=draw(st.booleans()),
            )
            for _ in range(option_count)
        ]
        questions.append(
            ClarificationQuestion(
                context=draw(words(60)),
                question=draw(words(60)),
                options=options,
                recommendation=draw(words(40)),
            )
        )
    return questions


# =============================================================================
# Property: Phase comment round trip
# =============================================================================


class TestPhaseCommentProperties:
    @given(phases=implementation_phases())
    @settings(max_examples=100)
    def test_phase_comment_round_trip(self, phases):
        parsed = parse_phases_from_comment(format_phases_comment(phases))
        assert parsed == phases

    @given(phases=implementation_phases())
    @settings(max_examples=100)
    def test_single_phase_is_not_multi_phase(self, phases):
        assert parse_phases_from_comment(format_phases_comment(phases[:1])) is None


# =============================================================================
# Property: Phase counter strings
# =============================================================================


class TestPhaseStringProperties:
    @given(total=st.integers(min_value=1, max_value=50), data=st.data())
    @settings(max_examples=100)
    def test_valid_counters_round_trip(self, total, data):
        current = data.draw(st.integers(min_value=1, max_value=total))
        assert parse_phase_string(format_phase_string(current, total)) == (current, total)

    @given(total=st.integers(min_value=1, max_value=50), extra=st.integers(min_value=1, max_value=10))
    @settings(max_examples=100)
    def test_counter_past_total_is_rejected(self, total, extra):
        assert parse_phase_string(format_phase_string(total + extra, total)) is None

    @given(value=st.text(max_size=10))
    @settings(max_examples=100)
    def test_parse_never_raises(self, value):
        result = parse_phase_string(value)
        assert result is None or 1 <= result[0] <= result[1]


# =============================================================================
# Property: Decision comment round trip
# =============================================================================


class TestDecisionCommentProperties:
    @given(decision=decisions())
    @settings(max_examples=100)
    def test_decision_round_trip(self, decision):
        parsed = parse_decision(format_decision_comment(decision))

        assert parsed is not None
        assert parsed.agent_id == decision.agent_id
        assert parsed.decision_type == decision.decision_type
        assert parsed.context == decision.context
        assert parsed.routing == decision.routing
        assert parsed.metadata_schema == decision.metadata_schema
        assert parsed.options == decision.options

    @given(decision=decisions())
    @settings(max_examples=100)
    def test_round_trip_without_footer_or_trailing_newline(self, decision):
        body = format_decision_comment(decision)[: -len(DECISION_FOOTER)].rstrip()

        parsed = parse_decision(body)

        assert parsed is not None
        assert parsed.options == decision.options

    @given(decision=decisions(), prefix=st.sampled_from(["🔍 **[Bug Investigator Agent]**", "🎨 **[Product Design Agent]**"]))
    @settings(max_examples=100)
    def test_agent_prefix_is_ignored(self, decision, prefix):
        parsed = parse_decision(f"{prefix}\n\n{format_decision_comment(decision)}")
        assert parsed is not None
        assert [o.id for o in parsed.options] == [o.id for o in decision.options]

    @given(issue_number=st.integers(min_value=1, max_value=10**6), secret=st.text(min_size=1, max_size=32))
    @settings(max_examples=100)
    def test_token_validates_only_for_its_issue(self, issue_number, secret):
        token = generate_decision_token(issue_number, secret)
        assert len(token) == 8
        assert validate_decision_token(issue_number, token, secret)
        assert not validate_decision_token(issue_number + 1, token, secret) or (
            generate_decision_token(issue_number + 1, secret) == token
        )


# =============================================================================
# Property: Clarification comment round trip
# =============================================================================


class TestClarificationCommentProperties:
    @given(questions=clarification_questions())
    @settings(max_examples=100)
    def test_clarification_round_trip(self, questions):
        assert parse_clarification_comment(format_clarification_comment(questions)) == questions

    @given(questions=clarification_questions())
    @settings(max_examples=100)
    def test_round_trip_with_agent_prefix(self, questions):
        body = format_clarification_comment(questions, "🏗️ **[Tech Design Agent]**")
        assert parse_clarification_comment(body) == questions


# =============================================================================
# Property: PR review verdicts
# =============================================================================


class TestReviewDecisionProperties:
    @given(
        verdict=st.sampled_from(["APPROVED", "REQUEST_CHANGES", "approved", "Request_Changes"]),
        before=words(40),
    )
    @settings(max_examples=100)
    def test_verdict_is_found_after_any_text(self, verdict, before):
        expected = REVIEW_APPROVED if verdict.upper() == "APPROVED" else REVIEW_REQUEST_CHANGES
        assert parse_review_decision(f"{before}\n\nDECISION: {verdict}") == expected

    @given(text=words(80))
    @settings(max_examples=100)
    def test_text_without_marker_has_no_verdict(self, text):
        assert parse_review_decision(text) is None
