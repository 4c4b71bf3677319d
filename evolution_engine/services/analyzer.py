"""
Conversation Analyzer.

Turns a finished conversation (ordered messages plus the final structured-field
snapshot) into a scored ``ConversationAnalysis``.

Two layers of scoring:

1. ``compute_basic_metrics`` is deterministic: field completion, refusals,
   phrase-based sentiment signals and heuristic professionalism, appeal
   success and satisfaction scores. It never fails.
2. The LLM collaborator receives a single structured prompt and returns JSON
   with qualitative scores, a sentiment trajectory, a drop-off point,
   improvement suggestions and rule proposals. The payload is validated
   against ``LLMAnalysisPayload``; final scores are the mean of the AI and
   heuristic values.

If the LLM output is malformed the analyzer records a degraded analysis with
only the deterministic statistics (no professionalism, sentiment or
suggestions). Provider outages are not hidden: ``TransientProviderError`` and
``CircuitOpenError`` propagate so the conversation stays unanalyzed and is
picked up by a later batch.

On-demand analysis is throttled by ``AnalysisThrottle``: one in-flight run
per session, a per-session cool-down and an hourly quota.
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from asyncpg import Pool
from pydantic import ValidationError

from evolution_engine.core.config import Settings
from evolution_engine.core.database import acquire, decode_json
from evolution_engine.core.errors import MalformedResponse
from evolution_engine.models.enums import Sentiment
from evolution_engine.models.schemas import (
    BasicMetrics,
    CollectionEfficiency,
    Conversation,
    ConversationAnalysis,
    LLMAnalysisPayload,
    Message,
)
from evolution_engine.services.health_monitor import HealthMonitor
from evolution_engine.services.llm_client import LLMClient, extract_json_object
from evolution_engine.sql import analysis_queries


logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Structured fields the assistant tries to collect during a conversation
TRACKED_FIELDS: List[str] = [
    'industry', 'problem_type', 'violation_reason', 'merchant_id', 'merchant_name',
    'company_name', 'license_no', 'legal_name', 'legal_id_last4', 'business_model',
    'complaint_status', 'refund_policy', 'bank_name', 'bank_account_last4',
    'contact_phone', 'appeal_history',
]

# Fields that carry most of the weight of an appeal
CRITICAL_FIELDS: List[str] = ['problem_type', 'violation_reason', 'merchant_id', 'industry']
IMPORTANT_FIELDS: List[str] = ['company_name', 'license_no', 'legal_name', 'business_model']

# Values the assistant writes for a field the user skipped
SKIPPED_PLACEHOLDERS: Set[str] = {'用户暂未提供', '⏳待补充'}

NEGATIVE_RE = re.compile(r'不想|烦|算了|太慢|没用|垃圾|废话')
POSITIVE_RE = re.compile(r'谢谢|感谢|不错|很好|厉害|专业')
REFUSAL_RE = re.compile(r'不知道|不记得|忘了|没有|不方便|不想说')

STRUCTURED_RE = re.compile(r'###|步骤|方案|建议|材料|证据|策略')
ACTIONABLE_RE = re.compile(r'具体|操作|提交|准备|需要您|请您|第[一二三四五]')
EMPATHY_RE = re.compile(r'理解|放心|别担心|没关系|很正常|遇到过')
INDUSTRY_TERM_RE = re.compile(r'风控|申诉|结算|交易|冻结|限额|处罚|合规|资质|备案')

# Quoted message lengths in the analysis prompt
PROMPT_USER_CHARS: int = 300
PROMPT_REPLY_CHARS: int = 200


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


# =============================================================================
# Deterministic Metrics
# =============================================================================

def _is_filled(value: Any) -> bool:
    if value is None:
        return False
    text = str(value).strip()
    return bool(text) and text not in SKIPPED_PLACEHOLDERS


def _collection_done(fields: Dict[str, Any]) -> bool:
    flag = fields.get('_collection_complete')
    return flag is True or flag == 'true'


def estimate_sentiment(positive: int, negative: int) -> Sentiment:
    """Map phrase-signal counts onto the five-point scale."""
    if negative >= 3:
        return Sentiment.NEGATIVE
    if negative >= 1 and positive == 0:
        return Sentiment.SLIGHTLY_NEGATIVE
    if positive >= 2:
        return Sentiment.POSITIVE
    if positive >= 1:
        return Sentiment.SLIGHTLY_POSITIVE
    return Sentiment.NEUTRAL


def compute_basic_metrics(conversation: Conversation) -> BasicMetrics:
    """
    Compute the transcript statistics that do not need the LLM.

    Args:
        conversation: Messages and the final collected-field snapshot.

    Returns:
        BasicMetrics with completion, refusal, sentiment-signal and heuristic
        score fields populated.

    Example:
        >>> conv = Conversation(session_id='s1', messages=[...], collected_data={'industry': '餐饮'})
        >>> compute_basic_metrics(conv).fields_collected
        1
    """
    fields = conversation.collected_data or {}
    user_messages = conversation.user_messages
    assistant_messages = conversation.assistant_messages

    filled = [k for k in TRACKED_FIELDS if _is_filled(fields.get(k))]
    skipped = [k for k in TRACKED_FIELDS if str(fields.get(k, '')).strip() in SKIPPED_PLACEHOLDERS]
    done = _collection_done(fields)

    total_turns = len(user_messages)
    collection_turns = total_turns

    negative = sum(1 for m in user_messages if NEGATIVE_RE.search(m.content))
    positive = sum(1 for m in user_messages if POSITIVE_RE.search(m.content))
    refusals = sum(1 for m in user_messages if REFUSAL_RE.search(m.content))

    completion_rate = round(len(filled) / len(TRACKED_FIELDS) * 100)

    # Professionalism: base 50 plus bonuses for replies with each quality signal
    professionalism = 50.0
    response_quality = 0.0
    replies = len(assistant_messages)
    if replies:
        ratios = [
            sum(1 for m in assistant_messages if pattern.search(m.content)) / replies
            for pattern in (STRUCTURED_RE, ACTIONABLE_RE, EMPATHY_RE, INDUSTRY_TERM_RE)
        ]
        professionalism += (
            min(15, round(ratios[0] * 15))
            + min(15, round(ratios[1] * 15))
            + min(10, round(ratios[2] * 10))
            + min(10, round(ratios[3] * 10))
        )
        response_quality = round(sum(ratios) / len(ratios) * 100, 1)

    # Appeal success: critical fields dominate, then important fields and overall completion
    critical = sum(1 for k in CRITICAL_FIELDS if k in filled)
    important = sum(1 for k in IMPORTANT_FIELDS if k in filled)
    if critical >= 3:
        appeal = 35
    elif critical >= 2:
        appeal = 20
    else:
        appeal = critical * 8
    appeal += important * 8
    appeal += min(25, round(completion_rate * 0.25))
    if done:
        appeal += 10
    appeal = _clamp(appeal, 5, 95)

    satisfaction = 50 + positive * 8 - negative * 12
    if done:
        satisfaction += 15
    if total_turns >= 3 and len(filled) >= 3:
        satisfaction += 10
    if filled and collection_turns / len(filled) <= 2:
        satisfaction += 5
    satisfaction = _clamp(satisfaction, 5, 100)

    untouched = len(TRACKED_FIELDS) - len(filled)
    efficiency = CollectionEfficiency(
        turns_per_field=round(collection_turns / len(filled), 1) if filled else None,
        refusal_rate=round(min(refusals, untouched) / len(TRACKED_FIELDS), 3),
        skip_rate=round(len(skipped) / len(TRACKED_FIELDS), 3),
        filled_fields=filled,
        skipped_fields=skipped,
    )

    return BasicMetrics(
        total_turns=total_turns,
        collection_turns=collection_turns,
        fields_collected=len(filled),
        fields_skipped=len(skipped),
        fields_refused=min(refusals, untouched),
        completion_rate=float(completion_rate),
        professionalism_score=float(professionalism),
        appeal_success_rate=float(appeal),
        user_satisfaction=float(satisfaction),
        response_quality=float(response_quality),
        estimated_sentiment=estimate_sentiment(positive, negative),
        positive_signals=positive,
        negative_signals=negative,
        collection_done=done,
        efficiency=efficiency,
    )


# =============================================================================
# LLM Prompt and Payload
# =============================================================================

ANALYSIS_PROMPT = """你是一个对话质量分析专家。请分析以下商户申诉咨询对话，输出严格JSON格式。

## 对话概况
- 总轮数：{turns}
- 已收集字段：{collected}/{field_total}
- 完成率：{completion}%
- 已收集：{filled}
- 跳过/未提供：{skipped}
- 当前活跃AI规则：{rules}

## 对话内容
{transcript}

## 输出JSON格式（严格遵守）
{{
  "userSentiment": "positive|slightly_positive|neutral|slightly_negative|negative",
  "professionalismScore": 0-100,
  "appealSuccessRate": 0-100,
  "userSatisfaction": 0-100,
  "sentimentTrajectory": [{{"turn": 1, "sentiment": "neutral", "reason": "初始咨询"}}],
  "dropOffPoint": "用户失去耐心的字段名，没有则为空字符串",
  "efficiency": {{"redundantQuestions": 0, "bestMoment": "", "worstMoment": ""}},
  "suggestions": [{{"type": "collection_strategy|question_template|conversation_pattern|diagnosis_rule",
                   "priority": "high|medium|low", "field": "", "current": "", "recommended": "",
                   "reason": "", "expectedImpact": ""}}],
  "ruleProposals": [{{"category": "collection_strategy|question_template|industry_knowledge|violation_strategy|conversation_pattern|diagnosis_rule",
                     "ruleKey": "唯一标识", "ruleName": "规则名称",
                     "content": {{"description": "规则描述", "condition": "触发条件", "action": "执行动作"}}}}]
}}

注意：suggestions 给出2-5条可执行建议；ruleProposals 仅在发现可通用的模式时提出1-3条；只输出JSON。"""


def build_analysis_prompt(
    conversation: Conversation,
    basic: BasicMetrics,
    rule_names: Sequence[str],
    max_turns: int,
) -> str:
    """Render the analysis prompt, quoting at most ``max_turns`` user turns."""
    user_messages = conversation.user_messages
    replies = conversation.assistant_messages

    turns = []
    for i, message in enumerate(user_messages[:max_turns]):
        reply = replies[i].content[:PROMPT_REPLY_CHARS] if i < len(replies) else ''
        turns.append(
            f"用户[{i + 1}]: {message.content[:PROMPT_USER_CHARS]}\nAI[{i + 1}]: {reply}"
        )

    extra = basic.efficiency.model_extra or {}
    return ANALYSIS_PROMPT.format(
        turns=basic.collection_turns,
        collected=basic.fields_collected,
        field_total=len(TRACKED_FIELDS),
        completion=round(basic.completion_rate),
        filled=', '.join(extra.get('filled_fields', [])) or '无',
        skipped=', '.join(extra.get('skipped_fields', [])) or '无',
        rules=', '.join(rule_names[:10]) or '暂无活跃规则',
        transcript='\n---\n'.join(turns),
    )


def parse_analysis_payload(text: str) -> LLMAnalysisPayload:
    """
    Validate the LLM's analysis JSON.

    Raises:
        MalformedResponse: If there is no JSON object or it fails validation.
    """
    data = extract_json_object(text)
    try:
        return LLMAnalysisPayload.model_validate(data)
    except ValidationError as e:
        raise MalformedResponse(
            f"Analysis payload failed validation: {e.error_count()} errors",
            raw_text=text[:2000],
        ) from e


def _merge(ai_value: Optional[float], basic_value: float) -> float:
    if ai_value is None:
        return basic_value
    return float(round((ai_value + basic_value) / 2))


# =============================================================================
# Throttling
# =============================================================================

class AnalysisThrottle:
    """
    Admission control for on-demand analyses.

    Rejects a session that is already being analyzed, one analyzed within the
    cool-down, and any request once the hourly quota is spent.
    """

    def __init__(self, settings: Settings, clock: Callable[[], datetime] = _utcnow):
        self._cooldown = timedelta(seconds=settings.analysis_session_cooldown_seconds)
        self._quota = settings.analysis_hourly_quota
        self._clock = clock
        self._in_flight: Set[str] = set()
        self._recent: Dict[str, datetime] = {}
        self._window_start: Optional[datetime] = None
        self._window_count = 0

    def try_acquire(self, session_id: str) -> Optional[str]:
        """Return None when admitted, else the reason for skipping."""
        now = self._clock()
        if session_id in self._in_flight:
            return 'in_flight'

        last = self._recent.get(session_id)
        if last is not None and now - last < self._cooldown:
            return 'cooldown'

        if self._window_start is None or now - self._window_start >= timedelta(hours=1):
            self._window_start = now
            self._window_count = 0
        if self._window_count >= self._quota:
            return 'quota_exhausted'

        self._window_count += 1
        self._in_flight.add(session_id)
        return None

    def release(self, session_id: str, analyzed: bool) -> None:
        self._in_flight.discard(session_id)
        if analyzed:
            self._recent[session_id] = self._clock()
            self._prune()

    def _prune(self) -> None:
        cutoff = self._clock() - self._cooldown
        for key in [k for k, ts in self._recent.items() if ts < cutoff]:
            del self._recent[key]


# =============================================================================
# Analyzer Service
# =============================================================================

class ConversationAnalyzer:
    """
    Loads conversations, scores them and persists the resulting analyses.

    Store calls run under the ``store`` component and LLM calls under ``llm``
    in the shared health monitor.
    """

    def __init__(
        self,
        settings: Settings,
        pool: Pool,
        health: HealthMonitor,
        llm: LLMClient,
    ):
        self._settings = settings
        self._pool = pool
        self._health = health
        self._llm = llm

    # -------------------------------------------------------------------------
    # Scoring
    # -------------------------------------------------------------------------

    async def analyze(
        self,
        conversation: Conversation,
        active_rule_ids: Sequence[int] = (),
        active_rule_names: Sequence[str] = (),
    ) -> ConversationAnalysis:
        """
        Score one conversation. Does not persist.

        Args:
            conversation: The transcript and field snapshot.
            active_rule_ids: Rules in effect for this conversation; recorded
                for effectiveness attribution.
            active_rule_names: Labels quoted in the prompt for context.

        Raises:
            TransientProviderError: The LLM failed after its retry.
            CircuitOpenError: The ``llm`` circuit is open.
        """
        basic = compute_basic_metrics(conversation)
        fields = conversation.collected_data or {}

        analysis = ConversationAnalysis(
            session_id=conversation.session_id,
            user_id=conversation.user_id,
            industry=str(fields.get('industry') or ''),
            problem_type=str(fields.get('problem_type') or ''),
            total_turns=basic.total_turns,
            collection_turns=basic.collection_turns,
            fields_collected=basic.fields_collected,
            fields_skipped=basic.fields_skipped,
            fields_refused=basic.fields_refused,
            completion_rate=basic.completion_rate,
            appeal_success_rate=basic.appeal_success_rate,
            user_satisfaction=basic.user_satisfaction,
            response_quality=basic.response_quality,
            collection_efficiency=basic.efficiency,
            active_rule_ids=list(active_rule_ids),
        )

        if not self._llm.configured:
            logger.info("LLM not configured, recording degraded analysis for %s", conversation.session_id)
            return self._degrade(analysis, basic, 'llm_not_configured')

        prompt = build_analysis_prompt(
            conversation, basic, list(active_rule_names), self._settings.analysis_prompt_turns
        )
        try:
            completion = await self._health.call(
                'llm', lambda: self._llm.complete([{'role': 'user', 'content': prompt}])
            )
            payload = parse_analysis_payload(completion.text)
        except MalformedResponse as e:
            logger.warning("Malformed analysis for %s: %s", conversation.session_id, e)
            return self._degrade(analysis, basic, str(e), raw_text=e.raw_text)

        efficiency = analysis.collection_efficiency.model_dump()
        efficiency.update({
            key: value for key, value in payload.efficiency.items()
            if key not in CollectionEfficiency.model_fields
        })

        return analysis.model_copy(update={
            'professionalism_score': _merge(payload.professionalism_score, basic.professionalism_score),
            'appeal_success_rate': _merge(payload.appeal_success_rate, basic.appeal_success_rate),
            'user_satisfaction': _merge(payload.user_satisfaction, basic.user_satisfaction),
            'user_sentiment': payload.user_sentiment or basic.estimated_sentiment,
            'drop_off_point': (payload.drop_off_point or '').strip() or None,
            'collection_efficiency': CollectionEfficiency.model_validate(efficiency),
            'sentiment_trajectory': payload.sentiment_trajectory,
            'suggestions': payload.suggestions,
            'rule_proposals': payload.rule_proposals,
            'raw_analysis': {
                'degraded': False,
                'text': completion.text[:4000],
                'input_tokens': completion.input_tokens,
                'output_tokens': completion.output_tokens,
                'rule_proposals': [p.model_dump(by_alias=True, mode='json') for p in payload.rule_proposals],
            },
        })

    @staticmethod
    def _degrade(
        analysis: ConversationAnalysis,
        basic: BasicMetrics,
        reason: str,
        raw_text: str = '',
    ) -> ConversationAnalysis:
        return analysis.model_copy(update={
            'degraded': True,
            'raw_analysis': {
                'degraded': True,
                'reason': reason[:500],
                'text': raw_text,
                'heuristic': {
                    'professionalism_score': basic.professionalism_score,
                    'estimated_sentiment': basic.estimated_sentiment.value,
                },
            },
        })

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    async def save(self, analysis: ConversationAnalysis) -> ConversationAnalysis:
        """Insert the analysis and return it with its id and timestamp."""

        async def _insert():
            async with acquire(self._pool) as conn:
                return await conn.fetchrow(
                    analysis_queries.get_insert_analysis_query(),
                    analysis.session_id,
                    analysis.user_id,
                    analysis.industry,
                    analysis.problem_type,
                    analysis.total_turns,
                    analysis.collection_turns,
                    analysis.fields_collected,
                    analysis.fields_skipped,
                    analysis.fields_refused,
                    analysis.completion_rate,
                    analysis.professionalism_score,
                    analysis.appeal_success_rate,
                    analysis.user_satisfaction,
                    analysis.response_quality,
                    analysis.user_sentiment.value if analysis.user_sentiment else None,
                    analysis.drop_off_point,
                    analysis.collection_efficiency.model_dump(mode='json'),
                    [s.model_dump(mode='json') for s in analysis.sentiment_trajectory],
                    [s.model_dump(mode='json') for s in analysis.suggestions],
                    analysis.raw_analysis,
                    analysis.active_rule_ids,
                )

        row = await self._health.call('store', _insert)
        return analysis.model_copy(update={'id': row['id'], 'analyzed_at': row['analyzed_at']})

    async def load_conversation(self, session_id: str) -> Optional[Conversation]:
        """Read a session and its messages; None if the session does not exist."""

        async def _load():
            async with acquire(self._pool) as conn:
                session = await conn.fetchrow(analysis_queries.get_session_query(), session_id)
                if session is None:
                    return None
                messages = await conn.fetch(analysis_queries.get_session_messages_query(), session_id)
                return session, messages

        loaded = await self._health.call('store', _load)
        if loaded is None:
            return None
        session, messages = loaded
        return self._to_conversation(session, messages)

    async def find_unanalyzed(self, limit: Optional[int] = None) -> List[Conversation]:
        """Recent conversations without an analysis, oldest first."""
        limit = limit or self._settings.analysis_batch_size

        async def _load():
            async with acquire(self._pool) as conn:
                sessions = await conn.fetch(
                    analysis_queries.get_unanalyzed_sessions_query(),
                    self._settings.analysis_lookback_days,
                    limit,
                    self._settings.analysis_min_messages,
                )
                result = []
                for session in sessions:
                    messages = await conn.fetch(
                        analysis_queries.get_session_messages_query(), session['session_id']
                    )
                    result.append((session, messages))
                return result

        loaded = await self._health.call('store', _load)
        return [self._to_conversation(session, messages) for session, messages in loaded]

    async def recent_analyses(self, limit: int) -> List[ConversationAnalysis]:
        async def _load():
            async with acquire(self._pool) as conn:
                return await conn.fetch(analysis_queries.get_recent_analyses_query(), limit)

        rows = await self._health.call('store', _load)
        return [ConversationAnalysis.from_record(row) for row in rows]

    @staticmethod
    def _to_conversation(session: Any, messages: Sequence[Any]) -> Conversation:
        return Conversation(
            session_id=str(session['session_id']),
            user_id=str(session['user_id']) if session['user_id'] is not None else None,
            collected_data=decode_json(session['collected_data'], {}) or {},
            created_at=session['created_at'],
            messages=[Message(role=m['role'], content=m['content'] or '') for m in messages],
        )
