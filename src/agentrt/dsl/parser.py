"""Recursive-descent parser for agent and module sources."""

from __future__ import annotations

from typing import Any

from agentrt.dsl import ast
from agentrt.dsl.domains import (
    SIMPLE_DOMAINS,
    Domain,
    EnumDomain,
    RangeDomain,
    StructDomain,
    StructField,
)
from agentrt.dsl.lexer import Token, read_version, tokenize
from agentrt.errors import ParseError

COMPARE_OPS = frozenset({"==", "!=", "<", "<=", ">", ">="})
KEYWORD_LITERALS = {"true": True, "false": False, "null": None}


class Parser:
    def __init__(self, source: str) -> None:
        self.tokens = tokenize(source)
        self.version, self.pos = read_version(self.tokens)

    # token helpers

    def peek(self, offset: int = 0) -> Token:
        idx = min(self.pos + offset, len(self.tokens) - 1)
        return self.tokens[idx]

    def advance(self) -> Token:
        tok = self.peek()
        if tok.kind != "EOF":
            self.pos += 1
        return tok

    def error(self, message: str, tok: Token | None = None) -> ParseError:
        tok = tok or self.peek()
        found = "end of input" if tok.kind == "EOF" else repr(tok.value)
        return ParseError(f"{message} (found {found})", line=tok.line, column=tok.column)

    def accept_op(self, value: str) -> bool:
        if self.peek().is_op(value):
            self.advance()
            return True
        return False

    def accept_name(self, value: str) -> bool:
        if self.peek().is_name(value):
            self.advance()
            return True
        return False

    def expect_op(self, value: str) -> Token:
        if not self.peek().is_op(value):
            raise self.error(f"expected {value!r}")
        return self.advance()

    def expect_name(self, value: str | None = None) -> str:
        tok = self.peek()
        if not tok.is_name(value):
            raise self.error(f"expected {value!r}" if value else "expected a name")
        self.advance()
        return str(tok.value)

    def expect_string(self) -> str:
        tok = self.peek()
        if tok.kind != "STRING":
            raise self.error("expected a string")
        self.advance()
        return str(tok.value)

    def expect_int(self) -> int:
        tok = self.peek()
        if tok.kind != "NUMBER" or not isinstance(tok.value, int) or tok.value < 0:
            raise self.error("expected a non-negative integer")
        self.advance()
        return int(tok.value)

    def expect_number(self) -> int | float:
        tok = self.peek()
        if tok.kind != "NUMBER":
            raise self.error("expected a number")
        self.advance()
        return tok.value  # type: ignore[return-value]

    def expect_duration(self) -> float:
        tok = self.peek()
        if tok.kind not in {"DURATION", "NUMBER"}:
            raise self.error("expected a duration")
        self.advance()
        value = float(tok.value)  # type: ignore[arg-type]
        if value <= 0:
            raise self.error("duration must be positive", tok)
        return value

    def skip_separators(self) -> None:
        while self.accept_op(",") or self.accept_op(";"):
            pass

    def name_list(self) -> tuple[str, ...]:
        self.expect_op("[")
        names: list[str] = []
        while not self.accept_op("]"):
            names.append(self.expect_name())
            if not self.peek().is_op("]"):
                self.expect_op(",")
        return tuple(names)

    def qualified_name(self) -> str:
        parts = [self.expect_name()]
        while self.accept_op("."):
            parts.append(self.expect_name())
        return ".".join(parts)

    # documents

    def parse_document(self) -> ast.AgentDocument | ast.ModuleDocument:
        tok = self.peek()
        if tok.is_name("agent"):
            doc: ast.AgentDocument | ast.ModuleDocument = self.parse_agent()
        elif tok.is_name("module"):
            doc = self.parse_module()
        else:
            raise self.error("expected 'agent' or 'module'")
        if self.peek().kind != "EOF":
            raise self.error("unexpected content after closing brace")
        return doc

    def parse_agent(self) -> ast.AgentDocument:
        line = self.peek().line
        self.expect_name("agent")
        doc = ast.AgentDocument(name=self.expect_name(), version=self.version, line=line)
        self.expect_op("{")
        while not self.accept_op("}"):
            tok = self.peek()
            if tok.kind == "EOF":
                raise self.error("unterminated agent block")
            keyword = self.expect_name()
            if keyword == "role":
                doc.role = self.expect_string()
            elif keyword == "objective":
                doc.objective = self.expect_string()
            elif keyword == "resources":
                doc.resources.update(self.string_mapping())
            elif keyword == "modules":
                doc.modules.update(self.string_mapping())
            elif keyword == "memory":
                doc.fields.extend(self.memory_block())
            elif keyword == "templates":
                doc.templates.extend(self.template_block())
            elif keyword == "constraints":
                doc.constraints.extend(self.constraint_block())
            elif keyword == "states":
                self.states_block(doc)
            elif keyword == "on":
                handler = self.handler(ast.GLOBAL_STATE, tok.line)
                if handler.event in ast.LIFECYCLE_HOOKS:
                    raise ParseError(
                        f"lifecycle hook '{handler.event}' must be declared inside a state",
                        line=tok.line,
                        column=tok.column,
                    )
                doc.handlers.append(handler)
            elif keyword == "test":
                doc.scenarios.append(self.scenario(tok.line))
            else:
                raise self.error(f"unknown agent section {keyword!r}", tok)
            self.skip_separators()
        return doc

    def parse_module(self) -> ast.ModuleDocument:
        line = self.peek().line
        self.expect_name("module")
        doc = ast.ModuleDocument(name=self.expect_name(), version=self.version, line=line)
        self.expect_op("{")
        while not self.accept_op("}"):
            tok = self.peek()
            if tok.kind == "EOF":
                raise self.error("unterminated module block")
            keyword = self.expect_name()
            if keyword == "templates":
                doc.templates.extend(self.template_block())
            elif keyword == "behavior":
                name = self.expect_name()
                if name in doc.behaviors:
                    raise self.error(f"duplicate behavior {name!r}", tok)
                doc.behaviors[name] = self.block()
            elif keyword == "function":
                doc.functions.append(self.function_def(tok.line))
            else:
                raise self.error(f"unknown module section {keyword!r}", tok)
            self.skip_separators()
        return doc

    # sections

    def string_mapping(self) -> dict[str, str]:
        out: dict[str, str] = {}
        self.expect_op("{")
        while not self.accept_op("}"):
            tok = self.peek()
            key = self.expect_name()
            self.expect_op("=")
            if key in out:
                raise self.error(f"duplicate entry {key!r}", tok)
            out[key] = self.expect_string()
            self.skip_separators()
        return out

    def memory_block(self) -> list[ast.FieldSpec]:
        fields: list[ast.FieldSpec] = []
        self.expect_op("{")
        while not self.accept_op("}"):
            line = self.peek().line
            name = self.expect_name()
            self.expect_op(":")
            domain = self.domain()
            default = ast.Literal(self.literal()) if self.accept_op("=") else None
            fields.append(ast.FieldSpec(name, domain, default, line))
            self.skip_separators()
        return fields

    def template_block(self) -> list[ast.Template]:
        templates: list[ast.Template] = []
        self.expect_op("{")
        while not self.accept_op("}"):
            line = self.peek().line
            name = self.expect_name()
            self.expect_op("=")
            templates.append(ast.Template(name, self.expect_string(), line))
            self.skip_separators()
        return templates

    def constraint_block(self) -> list[ast.Constraint]:
        constraints: list[ast.Constraint] = []
        self.expect_op("{")
        while not self.accept_op("}"):
            tok = self.peek()
            keyword = self.expect_name()
            if keyword == "never":
                action = self.expect_name()
                where = self.expression() if self.accept_name("where") else None
                constraints.append(ast.Prohibition(action, where, tok.line))
            elif keyword == "require":
                action = self.expect_name()
                self.expect_name("before")
                constraints.append(ast.Requirement(action, self.expect_name(), tok.line))
            elif keyword == "when":
                predicate = self.expression()
                self.expect_name("require")
                constraints.append(ast.ConditionalRule(predicate, self.expect_name(), tok.line))
            else:
                raise self.error("expected 'never', 'require' or 'when'", tok)
            self.skip_separators()
        return constraints

    def states_block(self, doc: ast.AgentDocument) -> None:
        self.expect_op("{")
        while not self.accept_op("}"):
            self.state_decl(doc)
            self.skip_separators()

    def state_decl(self, doc: ast.AgentDocument) -> None:
        tok = self.peek()
        initial = final = False
        while True:
            if self.accept_name("initial"):
                initial = True
            elif self.accept_name("final"):
                final = True
            else:
                break
        self.expect_name("state")
        name = self.expect_name()
        auto = self.accept_name("auto")
        description = ""
        transitions: tuple[str, ...] = ()
        timeout: float | None = None
        max_retries: int | None = None
        cleanup: tuple[str, ...] = ()
        self.expect_op("{")
        while not self.accept_op("}"):
            item = self.peek()
            keyword = self.expect_name()
            if keyword == "on":
                handler = self.handler(name, item.line)
                if handler.event in ast.LIFECYCLE_HOOKS:
                    if handler.guard is not None:
                        raise self.error("lifecycle hooks cannot have guards", item)
                    key = (name, handler.event)
                    if key in doc.hooks:
                        raise self.error(f"duplicate '{handler.event}' hook", item)
                    doc.hooks[key] = handler.block
                else:
                    doc.handlers.append(handler)
                self.skip_separators()
                continue
            self.accept_op(":")
            if keyword == "description":
                description = self.expect_string()
            elif keyword == "transitions":
                transitions = self.name_list()
            elif keyword == "timeout":
                timeout = self.expect_duration()
            elif keyword == "max_retries":
                max_retries = self.expect_int()
            elif keyword == "auto_transition":
                auto = not self.accept_name("false")
                self.accept_name("true")
            elif keyword == "final":
                final = not self.accept_name("false")
                self.accept_name("true")
            elif keyword == "cleanup":
                cleanup = self.name_list()
            else:
                raise self.error(f"unknown state attribute {keyword!r}", item)
            self.skip_separators()
        doc.states.append(
            ast.StateDefinition(
                name=name,
                description=description,
                transitions=transitions,
                timeout=timeout,
                max_retries=max_retries,
                initial=initial,
                final=final,
                auto=auto,
                cleanup=cleanup,
                line=tok.line,
            )
        )

    def handler(self, state: str, line: int) -> ast.EventHandler:
        event = self.expect_name()
        guard = self.expression() if self.accept_name("when") else None
        return ast.EventHandler(event=event, state=state, block=self.block(), guard=guard, line=line)

    def function_def(self, line: int) -> ast.FunctionDef:
        name = self.expect_name()
        self.expect_op("(")
        params: list[str] = []
        while not self.accept_op(")"):
            params.append(self.expect_name())
            if not self.peek().is_op(")"):
                self.expect_op(",")
        self.expect_op("=")
        return ast.FunctionDef(name, tuple(params), self.expression(), line)

    def scenario(self, line: int) -> ast.TestScenario:
        name = self.expect_string()
        fields: dict[str, Any] = {}
        self.expect_op("{")
        while not self.accept_op("}"):
            tok = self.peek()
            keyword = self.expect_name()
            if keyword in {"input", "inputs"} and "inputs" in fields:
                raise self.error("test declares its inputs twice", tok)
            if keyword == "inputs":
                values = self.literal()
                if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
                    raise self.error("inputs must be a list of strings", tok)
                fields["inputs"] = tuple(values)
            elif keyword == "input":
                fields["inputs"] = (self.expect_string(),)
            elif keyword == "answers":
                fields["answers"] = self.answers()
            elif keyword == "expect":
                self.expectation(fields)
            else:
                raise self.error(f"unknown test attribute {keyword!r}", tok)
            self.skip_separators()
        return ast.TestScenario(name=name, line=line, **fields)

    def answers(self) -> tuple[tuple[str, tuple[Any, ...]], ...]:
        out: list[tuple[str, tuple[Any, ...]]] = []
        self.expect_op("{")
        while not self.accept_op("}"):
            decision_id = self.expect_name()
            self.expect_op("=")
            if self.accept_op("["):
                sequence: list[Any] = []
                while not self.accept_op("]"):
                    sequence.append(self.answer())
                    if not self.peek().is_op("]"):
                        self.expect_op(",")
                out.append((decision_id, tuple(sequence)))
            else:
                out.append((decision_id, (self.answer(),)))
            self.skip_separators()
        return tuple(out)

    def answer(self) -> Any:
        if self.accept_name("timeout"):
            return ast.TIMEOUT_ANSWER
        value = self.literal()
        if self.accept_name("confidence"):
            return ast.Answer(value, float(self.expect_number()))
        return ast.Answer(value)

    def expectation(self, fields: dict[str, Any]) -> None:
        tok = self.peek()
        kind = self.expect_name()
        if kind == "state":
            fields["expect_state"] = self.expect_name()
        elif kind == "path":
            fields["expect_path"] = self.name_list()
        elif kind == "actions":
            fields["expect_actions"] = self.name_list()
        elif kind == "violations":
            fields["expect_violations"] = self.expect_int()
        elif kind in {"decisions", "values"}:
            pairs: list[tuple[str, Any]] = []
            self.expect_op("{")
            while not self.accept_op("}"):
                key = self.expect_name()
                self.expect_op("=")
                pairs.append((key, self.literal()))
                self.skip_separators()
            fields[f"expect_{kind}"] = tuple(pairs)
        else:
            raise self.error(f"unknown expectation {kind!r}", tok)

    # domains and literals

    def domain(self) -> Domain:
        tok = self.peek()
        kind = self.expect_name()
        if kind in SIMPLE_DOMAINS:
            return SIMPLE_DOMAINS[kind]
        if kind == "enum":
            self.expect_op("(")
            options: list[Any] = []
            while not self.accept_op(")"):
                options.append(self.literal())
                if not self.peek().is_op(")"):
                    self.expect_op(",")
            if not options:
                raise self.error("enum needs at least one option", tok)
            return EnumDomain(tuple(options))
        if kind == "range":
            self.expect_op("(")
            low = self.expect_number()
            self.expect_op(",")
            high = self.expect_number()
            self.expect_op(")")
            if low > high:
                raise self.error(f"empty range({low}, {high})", tok)
            return RangeDomain(low, high)
        if kind == "struct":
            self.expect_op("{")
            members: list[StructField] = []
            while not self.accept_op("}"):
                name = self.expect_name()
                required = not self.accept_op("?")
                self.expect_op(":")
                members.append(StructField(name, self.domain(), required))
                self.skip_separators()
            return StructDomain(tuple(members))
        raise self.error(f"unknown domain {kind!r}", tok)

    def literal(self) -> Any:
        tok = self.peek()
        if tok.kind in {"STRING", "NUMBER"}:
            self.advance()
            return tok.value
        if tok.kind == "NAME" and tok.value in KEYWORD_LITERALS:
            self.advance()
            return KEYWORD_LITERALS[str(tok.value)]
        if self.accept_op("["):
            items: list[Any] = []
            while not self.accept_op("]"):
                items.append(self.literal())
                if not self.peek().is_op("]"):
                    self.expect_op(",")
            return items
        if self.accept_op("{"):
            mapping: dict[str, Any] = {}
            while not self.accept_op("}"):
                key = self.expect_name()
                self.expect_op(":")
                mapping[key] = self.literal()
                self.skip_separators()
            return mapping
        raise self.error("expected a literal value")

    # statements

    def block(self) -> ast.BehaviorBlock:
        self.expect_op("{")
        statements: list[ast.Statement] = []
        while not self.accept_op("}"):
            if self.peek().kind == "EOF":
                raise self.error("unterminated block")
            statements.append(self.statement())
            self.skip_separators()
        return ast.BehaviorBlock(tuple(statements))

    def statement(self) -> ast.Statement:
        tok = self.peek()
        keyword = self.expect_name()
        line = tok.line
        if keyword == "decide":
            return self.decide(line)
        if keyword == "call":
            return self.call(line)
        if keyword == "set":
            name = self.expect_name()
            self.expect_op("=")
            return ast.SetField(name, self.expression(), line)
        if keyword == "let":
            name = self.expect_name()
            self.expect_op("=")
            return ast.Let(name, self.expression(), line)
        if keyword == "transition_to":
            return ast.TransitionTo(self.expect_name(), line)
        if keyword == "say":
            return ast.Say(self.qualified_name(), line)
        if keyword == "invoke":
            module = self.expect_name()
            self.expect_op(".")
            return ast.Invoke(module, self.expect_name(), line)
        if keyword == "retry":
            field = self.expect_name()
            exhausted = self.block() if self.accept_name("exhausted") else None
            return ast.Retry(field, exhausted, line)
        if keyword == "if":
            branches = [(self.expression(), self.block())]
            orelse = None
            while True:
                if self.accept_name("elif"):
                    branches.append((self.expression(), self.block()))
                elif self.accept_name("else"):
                    orelse = self.block()
                    break
                else:
                    break
            return ast.If(tuple(branches), orelse, line)
        if keyword == "match":
            return self.match(line)
        if keyword == "for":
            var = self.expect_name()
            self.expect_name("in")
            iterable = self.expression()
            limit = self.expect_int() if self.accept_name("max") else None
            return ast.ForEach(var, iterable, limit, self.block(), line)
        raise self.error(f"unknown statement {keyword!r}", tok)

    def decide(self, line: int) -> ast.DecisionSpec:
        decision_id = self.expect_name()
        self.expect_op(":")
        domain = self.domain()
        options: dict[str, Any] = {}
        if self.accept_op("{"):
            while not self.accept_op("}"):
                tok = self.peek()
                option = self.expect_name()
                if option in options:
                    raise self.error(f"duplicate decision option {option!r}", tok)
                if option == "given":
                    options["given"] = self.name_list()
                elif option == "constraint":
                    options["constraint"] = self.expression()
                elif option == "threshold":
                    value = float(self.expect_number())
                    if not 0.0 <= value <= 1.0:
                        raise self.error("threshold must be within [0, 1]", tok)
                    options["threshold"] = value
                elif option == "timeout":
                    options["timeout"] = self.expect_duration()
                elif option in {"fallback", "on_low_confidence", "on_timeout"}:
                    options[option] = ast.Literal(self.literal())
                else:
                    raise self.error(f"unknown decision option {option!r}", tok)
                self.skip_separators()
        return ast.DecisionSpec(id=decision_id, domain=domain, line=line, **options)

    def call(self, line: int) -> ast.ExecutionCall:
        capability = self.expect_name()
        args: list[ast.Expr] = []
        kwargs: list[tuple[str, ast.Expr]] = []
        self.expect_op("(")
        while not self.accept_op(")"):
            if self.peek().kind == "NAME" and self.peek(1).is_op("="):
                key = self.expect_name()
                self.advance()
                kwargs.append((key, self.expression()))
            else:
                if kwargs:
                    raise self.error("positional argument after named argument")
                args.append(self.expression())
            if not self.peek().is_op(")"):
                self.expect_op(",")
        target = self.expect_name() if self.accept_op("->") else None
        retries = 0
        delay = 0.0
        fallback: str | None = None
        while True:
            # `retry <field>` on the next line is a statement, `retry <n>` is a policy.
            if self.peek().is_name("retry") and self.peek(1).kind == "NUMBER":
                self.advance()
                retries = self.expect_int()
            elif self.accept_name("delay"):
                delay = self.expect_duration()
            elif self.accept_name("fallback"):
                fallback = self.expect_name()
            else:
                break
        return ast.ExecutionCall(
            capability=capability,
            args=tuple(args),
            kwargs=tuple(kwargs),
            target=target,
            retry=ast.RetryPolicy(retries=retries, delay=delay, fallback=fallback),
            line=line,
        )

    def match(self, line: int) -> ast.Match:
        subject = self.expression()
        arms: list[ast.MatchArm] = []
        self.expect_op("{")
        while not self.accept_op("}"):
            if self.accept_name("_"):
                patterns: tuple[Any, ...] | None = None
            else:
                values = [self.literal()]
                while self.accept_op(","):
                    values.append(self.literal())
                patterns = tuple(values)
            self.expect_op("=>")
            arms.append(ast.MatchArm(patterns, self.block()))
            self.skip_separators()
        return ast.Match(subject, tuple(arms), line)

    # expressions

    def expression(self) -> ast.Expr:
        operands = [self.and_expr()]
        while self.accept_name("or"):
            operands.append(self.and_expr())
        return operands[0] if len(operands) == 1 else ast.BoolOp("or", tuple(operands))

    def and_expr(self) -> ast.Expr:
        operands = [self.not_expr()]
        while self.accept_name("and"):
            operands.append(self.not_expr())
        return operands[0] if len(operands) == 1 else ast.BoolOp("and", tuple(operands))

    def not_expr(self) -> ast.Expr:
        if self.accept_name("not"):
            return ast.Not(self.not_expr())
        return self.comparison()

    def comparison(self) -> ast.Expr:
        left = self.primary()
        tok = self.peek()
        if tok.kind == "OP" and tok.value in COMPARE_OPS:
            self.advance()
            return ast.Compare(str(tok.value), left, self.primary())
        if tok.is_name("in"):
            self.advance()
            return ast.Compare("in", left, self.primary())
        if tok.is_name("not") and self.peek(1).is_name("in"):
            self.advance()
            self.advance()
            return ast.Compare("not in", left, self.primary())
        return left

    def primary(self) -> ast.Expr:
        tok = self.peek()
        if tok.kind in {"STRING", "NUMBER"}:
            self.advance()
            return ast.Literal(tok.value)
        if tok.kind == "NAME" and tok.value in KEYWORD_LITERALS:
            self.advance()
            return ast.Literal(KEYWORD_LITERALS[str(tok.value)])
        if self.accept_op("("):
            inner = self.expression()
            self.expect_op(")")
            return inner
        if self.accept_op("["):
            items: list[ast.Expr] = []
            while not self.accept_op("]"):
                items.append(self.expression())
                if not self.peek().is_op("]"):
                    self.expect_op(",")
            return ast.ListExpr(tuple(items))
        if tok.kind == "NAME":
            parts = [self.expect_name()]
            while self.peek().is_op(".") and self.peek(1).kind == "NAME":
                self.advance()
                parts.append(self.expect_name())
            if self.accept_op("("):
                args: list[ast.Expr] = []
                while not self.accept_op(")"):
                    args.append(self.expression())
                    if not self.peek().is_op(")"):
                        self.expect_op(",")
                return ast.Call(".".join(parts), tuple(args))
            expr: ast.Expr = ast.Name(parts[0])
            for attr in parts[1:]:
                expr = ast.Attribute(expr, attr)
            return expr
        raise self.error("expected an expression")


def parse(source: str) -> ast.AgentDocument | ast.ModuleDocument:
    """Parse source text into a raw document, raising ParseError on bad syntax."""
    return Parser(source).parse_document()
