import threading
from datetime import datetime

import pytest

import csvstream


def errors_of(validator, *values, field_name="field"):
    return [validator(v, field_name) for v in values]


# ----------------------------
# collect()
# ----------------------------

def test_collect_reduces_rows():
    total = csvstream.collect("name,amount\na,1\nb,2\nc,3", lambda acc, row: acc + int(row["amount"]), 0)
    assert total == 6


def test_collect_into_list():
    rows = csvstream.collect("name,age\nAlice,30\nBob,25", lambda acc, row: acc + [row], [])
    assert rows == [{"name": "Alice", "age": "30"}, {"name": "Bob", "age": "25"}]


def test_collect_with_numeric_keys():
    firsts = csvstream.collect("x,1\ny,2", lambda acc, row: acc + [row["1"]], [], has_headers=False)
    assert firsts == ["x", "y"]


def test_collect_empty_input_returns_initial():
    assert csvstream.collect("", lambda acc, row: acc + 1, 0) == 0


def test_collect_callback_error_aborts():
    seen = []

    def take_two(acc, row):
        seen.append(row)
        if len(seen) == 2:
            raise LookupError("Done")
        return acc

    with pytest.raises(csvstream.CollectAbortError) as exc:
        csvstream.collect("n\n1\n2\n3\n4", take_two, None, chunk_size=2)
    assert str(exc.value) == "Done"
    assert isinstance(exc.value.__cause__, LookupError)
    assert len(seen) == 2


def test_collect_raises_on_header_mismatch():
    with pytest.raises(csvstream.CSVStreamError) as exc:
        csvstream.collect("name,age\nAlice,30", lambda acc, row: acc, None, headers=["first", "last"])
    err = exc.value
    assert err.kind == csvstream.HEADER_MISMATCH
    assert err.line_num == 1
    assert "Header mismatch" in str(err)


def test_collect_raises_on_unbalanced_quotes():
    with pytest.raises(csvstream.CSVStreamError) as exc:
        csvstream.collect('a\n1\n"2', lambda acc, row: acc, None)
    assert exc.value.kind == csvstream.UNBALANCED_QUOTES
    assert exc.value.line_num == 3
    assert exc.value.raw == '"2'


# ----------------------------
# validate()
# ----------------------------

def test_validate_valid_csv():
    result = csvstream.validate("name,age\nAlice,30\nBob,25")
    assert result.valid
    assert result.row_count == 2
    assert result.invalid_row_count == 0
    assert result.invalid_rows == []
    assert result.fatal_error is None
    assert not result.cancelled


def test_validate_required_headers_match():
    result = csvstream.validate("name,age\nAlice,30", required_headers=["name", "age"])
    assert result.valid


def test_validate_required_headers_mismatch():
    result = csvstream.validate("name,age\nAlice,30\nBob,25", required_headers=["name", "email"])
    assert not result.valid
    assert result.row_count == 0
    assert result.fatal_error.kind == csvstream.HEADER_MISMATCH
    assert "Expected: [name, email], got: [name, age]" in result.fatal_error.message
    assert not result.cancelled


def test_validate_calls_row_callback_with_records():
    seen = []
    csvstream.validate("name,age\nAlice,30\nBob,25", lambda record: seen.append(record) or [])
    assert [r.row_num for r in seen] == [1, 2]
    assert seen[0].fields == {"name": "Alice", "age": "30"}
    assert seen[1].raw == "Bob,25"


def test_validate_collects_invalid_rows():
    def check(record):
        if not record.fields["age"].isdigit():
            return [f"age is not a number: {record.fields['age']}"]
        return []

    result = csvstream.validate("name,age\nAlice,30\nBob,old\nCarol,?", check)
    assert not result.valid
    assert result.row_count == 3
    assert result.invalid_row_count == 2
    assert [r.row_num for r in result.invalid_rows] == [2, 3]
    assert result.invalid_rows[0].errors == ["age is not a number: old"]
    assert result.invalid_rows[0].raw == "Bob,old"


def test_validate_max_invalid_rows_caps_list_not_count():
    text = "n\n" + "\n".join("x" for _ in range(5))
    result = csvstream.validate(text, lambda record: ["bad"], max_invalid_rows=2)
    assert result.invalid_row_count == 5
    assert len(result.invalid_rows) == 2


def test_validate_callback_none_or_empty_is_valid():
    assert csvstream.validate("a\n1", lambda record: None).valid
    assert csvstream.validate("a\n1", lambda record: []).valid


def test_validate_progress_callback():
    updates = []
    csvstream.validate("name,age\nAlice,30\nBob,25", on_progress=updates.append)
    assert len(updates) == 3
    assert updates[-1].row_count == 2
    assert updates[-1].line_num == 3
    assert updates[-1].bytes_processed == len("name,age\nAlice,30\nBob,25")
    assert updates[-1].total_bytes == updates[-1].bytes_processed


def test_validate_unbalanced_quotes_is_fatal():
    result = csvstream.validate('name,bio\nAlice,"never closed')
    assert not result.valid
    assert result.fatal_error.kind == csvstream.UNBALANCED_QUOTES
    assert result.fatal_error.line_num == 2


def test_validate_header_only_and_empty_input_have_no_data_rows():
    for text in ("name,age\n", ""):
        result = csvstream.validate(text)
        assert not result.valid
        assert result.fatal_error.kind == csvstream.NO_DATA_ROWS
        assert result.fatal_error.line_num == 1


def test_validate_without_headers_and_with_fixed_headers():
    seen = []
    csvstream.validate("Alice,30", lambda r: seen.append(r.fields), has_headers=False)
    csvstream.validate("Alice,30", lambda r: seen.append(r.fields), has_headers=False, headers=["name", "age"])
    assert seen == [{"1": "Alice", "2": "30"}, {"name": "Alice", "age": "30"}]


def test_validate_cancel_flag():
    flag = threading.Event()

    def stop_after_first(record):
        flag.set()
        return []

    result = csvstream.validate("n\n1\n2\n3\n4\n5\n", stop_after_first, cancel=flag, chunk_size=4)
    assert result.cancelled
    assert result.row_count == 1
    assert result.fatal_error is None


def test_validate_cancel_flag_within_one_chunk():
    flag = threading.Event()
    seen = []

    def stop_after_first(record):
        seen.append(record.row_num)
        flag.set()
        return ["bad"]

    result = csvstream.validate("n\n1\n2\n3\n4\n5\n", stop_after_first, cancel=flag)
    assert result.cancelled
    assert seen == [1]
    assert result.row_count == 1
    assert result.invalid_row_count == 1


def test_validate_row_callback_os_error_propagates():
    def broken(record):
        raise PermissionError("lookup table unavailable")

    with pytest.raises(PermissionError):
        csvstream.validate("n\n1\n", broken)


def test_validate_bom_crlf_and_delimiter():
    result = csvstream.validate(
        "\ufeffname;age\r\nAlice;30\r\n",
        required_headers=["name", "age"],
        delimiter=";",
    )
    assert result.valid
    assert result.row_count == 1


def test_validate_decode_failure_is_stream_error():
    result = csvstream.validate(b"name\n\xff\xfe\n")
    assert not result.valid
    assert result.fatal_error.kind == csvstream.STREAM_ERROR
    assert result.fatal_error.line_num == 0


def test_validate_rejects_negative_cap():
    with pytest.raises(ValueError):
        csvstream.validate("a\n1", max_invalid_rows=-1)


# ----------------------------
# Field validators
# ----------------------------

def test_required():
    v = csvstream.required()
    assert v("x", "name") is None
    assert v("", "name") == "name is required"
    assert v("   ", "name") == "name is required"
    assert csvstream.required("missing!")("", "name") == "missing!"


def test_number():
    v = csvstream.number()
    assert errors_of(v, "42", "3.14", "-1", "1e3", "") == [None] * 5
    assert v("abc", "age") == "age must be a valid number"
    assert v("nan", "age") == "age must be a valid number"


def test_number_bounds_integer_and_message():
    assert csvstream.number(min_value=0)("-1", "age") == "age must be at least 0"
    assert csvstream.number(max_value=100)("101", "age") == "age must be at most 100"
    assert csvstream.number(integer=True)("3.5", "age") == "age must be an integer"
    assert csvstream.number(integer=True)("3", "age") is None
    assert csvstream.number(min_value=0, message="bad age")("-1", "age") == "bad age"


def test_pattern():
    v = csvstream.pattern(r"^[A-Z]{3}-\d{4}$")
    assert v("ABC-1234", "code") is None
    assert v("", "code") is None
    assert v("abc", "code") == "code does not match the required pattern"
    assert csvstream.pattern(r"@", "need an @")("nope", "email") == "need an @"


def test_date_iso():
    v = csvstream.date()
    assert v("2024-01-15", "d") is None
    assert v("2024-01-15T10:30:00", "d") is None
    assert v("", "d") is None
    assert v("not a date", "d") == "d must be a valid date"


def test_date_us_and_eu():
    us = csvstream.date("us")
    assert us("12/31/2024", "d") is None
    assert us("31/12/2024", "d") == "d must be a valid date (MM/DD/YYYY)"
    assert us("02/30/2024", "d") == "d must be a valid date (MM/DD/YYYY)"
    eu = csvstream.date("eu")
    assert eu("31/12/2024", "d") is None
    assert eu("12/31/2024", "d") == "d must be a valid date (DD/MM/YYYY)"
    with pytest.raises(ValueError):
        csvstream.date("jp")


def test_date_before_after_are_exclusive():
    cutoff = datetime(2024, 1, 1)
    before = csvstream.date(before=cutoff)
    assert before("2023-12-31", "d") is None
    assert before("2024-01-01", "d") == "d must be before 2024-01-01T00:00:00"
    after = csvstream.date(after=cutoff)
    assert after("2024-01-02", "d") is None
    assert after("2024-01-01", "d") == "d must be after 2024-01-01T00:00:00"


def test_boolean():
    v = csvstream.boolean()
    assert errors_of(v, "true", "FALSE", "Yes", "no", "1", "0", "y", "N", "") == [None] * 9
    assert v("maybe", "active") == "active must be a boolean value (true/false, yes/no, 1/0)"


def test_one_of():
    v = csvstream.one_of(["red", "green"])
    assert v("red", "color") is None
    assert v("", "color") is None
    assert v("blue", "color") == "color must be one of ['green', 'red']"


# ----------------------------
# Schema validation
# ----------------------------

SCHEMA = {
    "name": [csvstream.required()],
    "email": [csvstream.required(), csvstream.pattern(r"^[^@\s]+@[^@\s]+$")],
    "age": [csvstream.number(min_value=0, max_value=150)],
}


def test_validate_schema_simple_valid():
    result = csvstream.validate_schema("name,email,age\nAlice,alice@example.com,30\nBob,bob@example.com,", SCHEMA)
    assert result.valid
    assert result.row_count == 2


def test_validate_schema_reports_field_errors():
    result = csvstream.validate_schema("name,email,age\n,not-an-email,-5", SCHEMA)
    assert not result.valid
    assert result.invalid_rows[0].errors == [
        "name is required",
        "email does not match the required pattern",
        "age must be at least 0",
    ]


def test_validate_schema_full_schema_with_aliases():
    schema = csvstream.CSVSchema(columns=[
        csvstream.ColumnSchema("email", [csvstream.required()], aliases=["e-mail"]),
        csvstream.ColumnSchema("name", [csvstream.required()]),
    ])
    result = csvstream.validate_schema("Name,E-Mail\nAlice,alice@example.com", schema)
    assert result.valid


def test_validate_schema_extra_columns():
    text = "name,email,age,nickname\nAlice,a@b.c,30,Al"
    assert csvstream.validate_schema(text, SCHEMA).valid

    strict = csvstream.CSVSchema(
        columns=[csvstream.ColumnSchema(name, tuple(vs)) for name, vs in SCHEMA.items()],
        allow_extra_columns=False,
    )
    result = csvstream.validate_schema(text, strict)
    assert result.invalid_rows[0].errors == ["Unexpected column: nickname"]


def test_validate_schema_missing_column_runs_validators_on_blank():
    result = csvstream.validate_schema("name\nAlice", {"name": [csvstream.required()], "phone": [csvstream.required()]})
    assert result.invalid_rows[0].errors == ["phone is required"]


def test_validate_schema_reordering_disallowed():
    schema = csvstream.CSVSchema(
        columns=[csvstream.ColumnSchema("name"), csvstream.ColumnSchema("age")],
        allow_reordering=False,
    )
    assert csvstream.validate_schema("name,age\nAlice,30", schema).valid
    result = csvstream.validate_schema("age,name\n30,Alice", schema)
    assert result.fatal_error.kind == csvstream.HEADER_MISMATCH


def test_validate_schema_delimiter_and_cap():
    schema = csvstream.CSVSchema(columns=[csvstream.ColumnSchema("n", [csvstream.number()])], delimiter=";")
    result = csvstream.validate_schema("n;x\na;1\nb;2\nc;3", schema, max_invalid_rows=1)
    assert result.invalid_row_count == 3
    assert len(result.invalid_rows) == 1


def test_create_validator_is_reusable():
    check = csvstream.create_validator(SCHEMA)
    assert check("name,email,age\nAlice,a@b.c,30").valid
    assert not check("name,email,age\nBob,,30").valid
    updates = []
    check("name,email,age\nAlice,a@b.c,30", on_progress=updates.append)
    assert updates
