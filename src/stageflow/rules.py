# rules.py
"""
Trigger evaluation: decide whether a pipeline run is created and which
jobs it includes.

Predicates are small boolean expressions over trigger variables:

    $CI_PIPELINE_SOURCE == "merge_request_event"
    $CI_COMMIT_BRANCH == $CI_DEFAULT_BRANCH && $DEPLOY != "false"
    $CI_COMMIT_REF_NAME in ["main", "release"]
    $CI_COMMIT_REF_NAME =~ /^feature\\//i
    !$SKIP_TESTS || ($FORCE == "1")

A bare `$VAR` is true when the variable is defined and non-empty.
Evaluation has no side effects. A predicate that cannot be parsed raises
RuleEvaluationError, which the evaluator logs and treats as "no match".
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from fnmatch import fnmatch
from functools import lru_cache
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .errors import RuleEvaluationError
from .model import JobSpec, PipelineSpec, Rule, TriggerContext, When

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<var>\$\{[A-Za-z_][A-Za-z0-9_]*\}|\$[A-Za-z_][A-Za-z0-9_]*)
  | (?P<string>"(?:\\.|[^"\\])*"|'(?:\\.|[^'\\])*')
  | (?P<regex>/(?:\\.|[^/\\])*/[imsx]*)
  | (?P<op>==|!=|=~|!~|&&|\|\||!|\(|\)|\[|\]|,)
  | (?P<word>[A-Za-z_]+)
    """,
    re.VERBOSE,
)

_KEYWORDS = {"in", "not", "null"}


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str
    pos: int


def _tokenize(text: str) -> List[_Token]:
    tokens: List[_Token] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if m is None:
            raise RuleEvaluationError(f"Unexpected character {text[pos]!r} at {pos}", details={"predicate": text})
        kind = m.lastgroup or ""
        if kind == "word" and m.group() not in _KEYWORDS:
            raise RuleEvaluationError(f"Unknown word {m.group()!r} at {pos}", details={"predicate": text})
        if kind != "ws":
            tokens.append(_Token(kind, m.group(), pos))
        pos = m.end()
    return tokens


# ---------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------

Value = Optional[str]


@dataclass(frozen=True)
class Var:
    name: str

    def value(self, env: Mapping[str, str]) -> Value:
        return env.get(self.name)

    def test(self, env: Mapping[str, str]) -> bool:
        return bool(self.value(env))


@dataclass(frozen=True)
class Literal:
    text: Value

    def value(self, env: Mapping[str, str]) -> Value:
        return self.text

    def test(self, env: Mapping[str, str]) -> bool:
        return bool(self.text)


Operand = Union[Var, Literal]


@dataclass(frozen=True)
class Compare:
    left: Operand
    op: str  # == or !=
    right: Operand

    def test(self, env: Mapping[str, str]) -> bool:
        equal = self.left.value(env) == self.right.value(env)
        return equal if self.op == "==" else not equal


@dataclass(frozen=True)
class Match:
    left: Operand
    pattern: "re.Pattern[str]"
    negate: bool = False

    def test(self, env: Mapping[str, str]) -> bool:
        v = self.left.value(env)
        hit = v is not None and self.pattern.search(v) is not None
        return not hit if self.negate else hit


@dataclass(frozen=True)
class Membership:
    left: Operand
    options: Tuple[Operand, ...]
    negate: bool = False

    def test(self, env: Mapping[str, str]) -> bool:
        v = self.left.value(env)
        hit = any(v == o.value(env) for o in self.options)
        return not hit if self.negate else hit


@dataclass(frozen=True)
class Not:
    inner: "Node"

    def test(self, env: Mapping[str, str]) -> bool:
        return not self.inner.test(env)


@dataclass(frozen=True)
class And:
    parts: Tuple["Node", ...]

    def test(self, env: Mapping[str, str]) -> bool:
        return all(p.test(env) for p in self.parts)


@dataclass(frozen=True)
class Or:
    parts: Tuple["Node", ...]

    def test(self, env: Mapping[str, str]) -> bool:
        return any(p.test(env) for p in self.parts)


Node = Union[Var, Literal, Compare, Match, Membership, Not, And, Or]


# ---------------------------------------------------------------------
# Parser (recursive descent)
# ---------------------------------------------------------------------

class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.i = 0

    def _fail(self, msg: str) -> RuleEvaluationError:
        return RuleEvaluationError(msg, details={"predicate": self.text})

    def _peek(self) -> Optional[_Token]:
        return self.tokens[self.i] if self.i < len(self.tokens) else None

    def _accept(self, text: str) -> bool:
        tok = self._peek()
        if tok is not None and tok.text == text and tok.kind in ("op", "word"):
            self.i += 1
            return True
        return False

    def _expect(self, text: str) -> None:
        if not self._accept(text):
            tok = self._peek()
            where = f"at {tok.pos}" if tok else "at end of input"
            raise self._fail(f"Expected {text!r} {where}")

    def parse(self) -> Node:
        if not self.tokens:
            raise self._fail("Empty predicate")
        node = self._or()
        if self._peek() is not None:
            raise self._fail(f"Unexpected token {self._peek().text!r}")
        return node

    def _or(self) -> Node:
        parts = [self._and()]
        while self._accept("||"):
            parts.append(self._and())
        return parts[0] if len(parts) == 1 else Or(tuple(parts))

    def _and(self) -> Node:
        parts = [self._unary()]
        while self._accept("&&"):
            parts.append(self._unary())
        return parts[0] if len(parts) == 1 else And(tuple(parts))

    def _unary(self) -> Node:
        if self._accept("!"):
            return Not(self._unary())
        if self._accept("("):
            node = self._or()
            self._expect(")")
            return node
        return self._comparison()

    def _comparison(self) -> Node:
        left = self._operand()
        tok = self._peek()
        if tok is None:
            return left
        if tok.text in ("==", "!="):
            self.i += 1
            return Compare(left, tok.text, self._operand())
        if tok.text in ("=~", "!~"):
            self.i += 1
            return Match(left, self._regex(), negate=tok.text == "!~")
        if self._accept("in"):
            return Membership(left, self._list())
        if self._accept("not"):
            self._expect("in")
            return Membership(left, self._list(), negate=True)
        return left

    def _operand(self) -> Operand:
        tok = self._peek()
        if tok is None:
            raise self._fail("Expected a variable or string at end of input")
        self.i += 1
        if tok.kind == "var":
            return Var(tok.text.lstrip("$").strip("{}"))
        if tok.kind == "string":
            body = tok.text[1:-1]
            return Literal(re.sub(r"\\(.)", r"\1", body))
        if tok.text == "null":
            return Literal(None)
        raise self._fail(f"Expected a variable or string at {tok.pos}, got {tok.text!r}")

    def _regex(self) -> "re.Pattern[str]":
        tok = self._peek()
        if tok is None or tok.kind != "regex":
            raise self._fail("Expected /pattern/ after regex operator")
        self.i += 1
        body, _, flags = tok.text[1:].rpartition("/")
        re_flags = 0
        for f in flags:
            re_flags |= {"i": re.I, "m": re.M, "s": re.S, "x": re.X}[f]
        try:
            return re.compile(body.replace("\\/", "/"), re_flags)
        except re.error as e:
            raise self._fail(f"Invalid regex {tok.text}: {e}") from e

    def _list(self) -> Tuple[Operand, ...]:
        self._expect("[")
        items = [self._operand()]
        while self._accept(","):
            items.append(self._operand())
        self._expect("]")
        return tuple(items)


@lru_cache(maxsize=512)
def compile_predicate(text: str) -> Node:
    """Parse a predicate. Raises RuleEvaluationError when malformed."""
    return _Parser(text).parse()


def evaluate_predicate(text: str, variables: Mapping[str, str]) -> bool:
    return compile_predicate(text).test(variables)


# ---------------------------------------------------------------------
# Rule matching
# ---------------------------------------------------------------------

def _matches_any(path: str, patterns: Sequence[str]) -> bool:
    return any(fnmatch(path, p) for p in patterns)


def rule_matches(rule: Rule, variables: Mapping[str, str], changed_files: Optional[Iterable[str]]) -> bool:
    """
    A rule matches when its condition holds and, if it lists `changes`,
    at least one changed file matches. Unknown change sets count as a match.
    Malformed conditions never match.
    """
    if rule.condition is not None:
        try:
            if not evaluate_predicate(rule.condition, variables):
                return False
        except RuleEvaluationError as e:
            logger.warning("Ignoring malformed rule %r: %s", rule.condition, e.message)
            return False

    if rule.changes and changed_files is not None:
        return any(_matches_any(f, rule.changes) for f in changed_files)
    return True


def first_match(
    rules: Sequence[Rule],
    variables: Mapping[str, str],
    changed_files: Optional[Iterable[str]] = None,
) -> Tuple[Optional[int], Optional[Rule]]:
    files = list(changed_files) if changed_files is not None else None
    for idx, rule in enumerate(rules):
        if rule_matches(rule, variables, files):
            return idx, rule
    return None, None


@dataclass(frozen=True)
class JobDecision:
    included: bool
    when: When
    reason: str
    variables: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Evaluation:
    """Outcome of admitting a trigger: per-job include/exclude decisions."""
    trigger: TriggerContext
    decisions: Dict[str, JobDecision]
    variables: Dict[str, str]

    @property
    def included(self) -> List[str]:
        return [name for name, d in self.decisions.items() if d.included]

    @property
    def excluded(self) -> List[str]:
        return [name for name, d in self.decisions.items() if not d.included]


class TriggerEvaluator:
    def __init__(self, spec: PipelineSpec):
        self.spec = spec

    def pipeline_variables(self, trigger: TriggerContext) -> Dict[str, str]:
        env = dict(self.spec.variables)
        env.update(trigger.all_variables())
        return env

    def admits(self, trigger: TriggerContext) -> bool:
        """Workflow rules: first match wins, no rules means always."""
        if not self.spec.workflow:
            return True
        env = self.pipeline_variables(trigger)
        idx, rule = first_match(self.spec.workflow, env, trigger.changed_files)
        if rule is None:
            logger.info("No workflow rule matched (event=%s, branch=%s); no pipeline", trigger.event, trigger.branch)
            return False
        if rule.when == When.NEVER:
            logger.info("Workflow rule #%d excludes the pipeline", idx)
            return False
        return True

    def decide(self, job: JobSpec, env: Mapping[str, str], trigger: TriggerContext) -> JobDecision:
        if not job.rules:
            if job.when == When.NEVER:
                return JobDecision(False, When.NEVER, "when: never")
            return JobDecision(True, job.when, "no rules")

        idx, rule = first_match(job.rules, env, trigger.changed_files)
        if rule is None:
            return JobDecision(False, When.NEVER, "no rule matched")

        when = rule.when or job.when
        if when == When.NEVER:
            return JobDecision(False, When.NEVER, f"rule #{idx} says never")
        return JobDecision(True, when, f"rule #{idx} matched", dict(rule.variables))

    def evaluate(self, trigger: TriggerContext) -> Optional[Evaluation]:
        """Return None when no run should be created."""
        if not self.admits(trigger):
            return None
        env = self.pipeline_variables(trigger)
        if self.spec.workflow:
            _, rule = first_match(self.spec.workflow, env, trigger.changed_files)
            if rule is not None and rule.variables:
                env.update(rule.variables)
        decisions = {j.name: self.decide(j, env, trigger) for j in self.spec.jobs}
        for name, d in decisions.items():
            logger.debug("job %s: %s (%s)", name, "included" if d.included else "excluded", d.reason)
        return Evaluation(trigger=trigger, decisions=decisions, variables=env)
