"""
Lexer, parser and command-representation tests.

Covers tokenization of every mnemonic and literal form, the grammar of each
instruction, label binding (forward, stacked, trailing, duplicate) and the
validation helpers that reject malformed commands.
"""

import pytest

from commands import (
    COND_ALWAYS,
    COND_GREATER,
    OPERAND_BASE,
    OPERAND_IMM,
    OPERAND_LABEL,
    OPERAND_REG,
    OPERAND_STR,
    Command,
    Operand,
    Program,
    to_signed64,
    to_unsigned64,
    validate_command,
)
from lexer import ASMParseError, Lexer
from parser import parse_source


def _types(source: str) -> list:
    return [t.type for t in Lexer(source, "<test>").tokenize()]


class TestLexer:
    def test_mnemonics(self):
        assert _types("mov add sub cmp cmp_u and eor orr") == [
            "MOV", "ADD", "SUB", "CMP", "CMP_U", "AND", "EOR", "ORR", "EOF",
        ]
        assert _types("lsl lsr asr load store put print call ret") == [
            "LSL", "LSR", "ASR", "LOAD", "STORE", "PUT", "PRINT", "CALL", "RET", "EOF",
        ]

    def test_branch_mnemonics(self):
        assert _types("b b.eq b.ne b.gt b.ge b.lt b.le") == [
            "B", "B.EQ", "B.NE", "B.GT", "B.GE", "B.LT", "B.LE", "EOF",
        ]

    def test_mnemonics_are_case_sensitive(self):
        assert _types("MOV") == ["IDENT", "EOF"]

    def test_comments_and_newlines(self):
        assert _types("ret ; trailing\n// whole line\nret") == ["RET", "NEWLINE", "NEWLINE", "RET", "EOF"]

    def test_numbers_are_single_tokens(self):
        tokens = Lexer("0x1F -12 0b101", "<test>").tokenize()
        assert [(t.type, t.value) for t in tokens[:3]] == [
            ("NUMBER", "0x1F"), ("NUMBER", "-12"), ("NUMBER", "0b101"),
        ]

    def test_string_escapes(self):
        token = Lexer(r'"a\tb\n\"q\"\\"', "<test>").tokenize()[0]
        assert token.type == "STRING"
        assert token.value == 'a\tb\n"q"\\'

    def test_unterminated_string(self):
        with pytest.raises(ASMParseError, match="Unterminated"):
            Lexer('put "abc\n', "<test>").tokenize()

    def test_unexpected_character_reports_position(self):
        with pytest.raises(ASMParseError, match="<test>:2:5"):
            Lexer("ret\nmov $", "<test>").tokenize()

    def test_label_identifiers_may_start_with_dot(self):
        tokens = Lexer(".L_end:", "<test>").tokenize()
        assert (tokens[0].type, tokens[0].value) == ("IDENT", ".L_end")
        assert tokens[1].type == "COLON"


class TestParser:
    def test_end_to_end_program_shape(self):
        program = parse_source("mov x0 5\nmov x1 10\nadd x2 x0 x1\nprint x2 d")
        assert [c.op for c in program.commands] == ["mov", "mov", "add", "print"]
        add = program.commands[2]
        assert add.destination == 2
        assert add.a == Operand.register(0)
        assert add.b == Operand.register(1)
        assert program.commands[3].b == Operand(OPERAND_BASE, "d")

    def test_register_or_immediate_operands(self):
        program = parse_source("sub x1 x2 7\ncmp x3 x4\ncmp_u x3 -1")
        assert program.commands[0].b == Operand(OPERAND_IMM, 7)
        assert program.commands[1].b == Operand(OPERAND_REG, 4)
        assert program.commands[2].b == Operand(OPERAND_IMM, -1)

    def test_load_and_store_operand_order(self):
        program = parse_source("load x1 8 x2\nstore x3 16 4")
        load, store = program.commands
        assert (load.destination, load.a, load.b) == (1, Operand.immediate(8), Operand.register(2))
        assert (store.destination, store.a, store.b) == (3, Operand.immediate(4), Operand.immediate(16))

    def test_put_and_print_bases(self):
        program = parse_source('put "hi" 0\nprint 0 s\nprint x1 x\nprint x1 b')
        assert program.commands[0].a == Operand(OPERAND_STR, "hi")
        assert [c.b.value for c in program.commands[1:]] == ["s", "x", "b"]

    def test_commas_are_optional(self):
        program = parse_source("add x0, x1, 3")
        assert program.commands[0].b == Operand.immediate(3)

    def test_literal_radixes(self):
        program = parse_source("mov x0 0x10\nmov x1 0b101\nmov x2 -0x2")
        assert [c.a.value for c in program.commands] == [16, 5, -2]

    def test_unsigned_literal_wraps_to_signed(self):
        program = parse_source("mov x0 0xFFFFFFFFFFFFFFFF")
        assert program.commands[0].a.value == -1

    def test_literal_too_wide(self):
        with pytest.raises(ASMParseError, match="64 bits"):
            parse_source("mov x0 0x10000000000000000")

    @pytest.mark.parametrize("literal", ["12abc", "1_000", "0x_ff", "0x0x1", "0b102", "-0x"])
    def test_bad_literal(self, literal):
        with pytest.raises(ASMParseError, match="Invalid numeric literal"):
            parse_source(f"mov x0 {literal}")

    def test_register_range(self):
        parse_source("mov x31 1")
        with pytest.raises(ASMParseError, match="Expected register"):
            parse_source("mov x32 1")
        with pytest.raises(ASMParseError, match="Expected register"):
            parse_source("mov y1 1")

    def test_mov_requires_immediate(self):
        with pytest.raises(ASMParseError):
            parse_source("mov x0 x1")

    def test_bitwise_operands_must_be_registers(self):
        parse_source("and x0 x1 x2\neor x0 x1 x2\norr x0 x1 x2")
        with pytest.raises(ASMParseError):
            parse_source("and x0 x1 5")

    def test_print_requires_base(self):
        with pytest.raises(ASMParseError, match="print base"):
            parse_source("print x0 q")

    def test_one_command_per_line(self):
        with pytest.raises(ASMParseError, match="end of line"):
            parse_source("ret ret")

    def test_branch_conditions(self):
        program = parse_source("b top\nb.gt top\ntop:\nret")
        assert program.commands[0].condition == COND_ALWAYS
        assert program.commands[1].condition == COND_GREATER
        assert program.commands[1].a == Operand(OPERAND_LABEL, "top")


class TestLabels:
    def test_forward_reference(self):
        program = parse_source("b later\nmov x0 1\nlater:\nmov x0 2")
        assert program.labels.lookup("later") == 2

    def test_label_on_same_line(self):
        program = parse_source("start: mov x0 1\nb start")
        assert program.labels.lookup("start") == 0

    def test_stacked_labels_share_command(self):
        program = parse_source("a:\nb_label:\nret")
        assert program.labels.lookup("a") == 0
        assert program.labels.lookup("b_label") == 0

    def test_trailing_label_binds_end(self):
        program = parse_source("mov x0 1\ndone:")
        assert program.labels.lookup("done") == program.end == 1

    def test_duplicate_label(self):
        with pytest.raises(ASMParseError, match="Duplicate label 'loop'"):
            parse_source("loop:\nret\nloop:\nret")

    def test_labels_are_case_sensitive(self):
        program = parse_source("Loop:\nret\nloop:\nret")
        assert program.labels.lookup("Loop") == 0
        assert program.labels.lookup("loop") == 1

    def test_table_is_sealed_after_parse(self):
        program = parse_source("ret")
        assert program.labels.sealed


class TestCommandValidation:
    def test_valid_commands(self):
        validate_command(Command("mov", destination=0, a=Operand.immediate(1)))
        validate_command(Command("ret"))
        validate_command(Command("b", a=Operand.label("x"), condition=COND_ALWAYS))

    def test_unknown_operation(self):
        with pytest.raises(ASMParseError, match="Unknown operation"):
            validate_command(Command("mul", destination=0))

    def test_missing_destination(self):
        with pytest.raises(ASMParseError, match="requires a register"):
            validate_command(Command("mov", a=Operand.immediate(1)))

    def test_register_out_of_range(self):
        with pytest.raises(ASMParseError, match="out of range"):
            validate_command(Command("add", destination=1, a=Operand.register(40), b=Operand.immediate(1)))

    def test_branch_needs_condition(self):
        with pytest.raises(ASMParseError, match="branch condition"):
            validate_command(Command("b", a=Operand.label("x")))

    def test_program_validate_checks_label_range(self):
        program = Program(commands=[Command("ret")])
        program.labels.insert("far", 5)
        with pytest.raises(ASMParseError, match="outside the program"):
            program.validate()

    def test_render_round_trips_syntax(self):
        program = parse_source('store x3 16 4\nb.le top\nput "a\\"b" x1\ntop:\nret')
        assert [c.render() for c in program.commands] == [
            "store x3 16 4", "b.le top", 'put "a\\"b" x1', "ret",
        ]

    def test_signed_unsigned_helpers(self):
        assert to_signed64(1 << 63) == -(1 << 63)
        assert to_signed64((1 << 64) - 1) == -1
        assert to_unsigned64(-1) == (1 << 64) - 1
