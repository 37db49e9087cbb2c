"""
Tests for the sandboxed transform runner.
"""
import asyncio

import pytest

from analyst.core.errors import TransformError
from analyst.services.transform import run_transform, run_transform_async

ROWS = [{"name": "a", "amount": "$10"}, {"name": "b", "amount": "$5"}]


@pytest.mark.unit
def test_valid_transform_returns_new_rows():
    code = """
result = []
for row in data:
    result.append({"name": row["name"].upper(), "amount": float(row["amount"].replace("$", ""))})
return result
"""
    assert run_transform(ROWS, code) == [{"name": "A", "amount": 10.0}, {"name": "B", "amount": 5.0}]


@pytest.mark.unit
def test_input_rows_are_not_mutated():
    code = """
for row in data:
    row["name"] = "changed"
return data
"""
    run_transform(ROWS, code)
    assert ROWS[0]["name"] == "a"


@pytest.mark.unit
def test_non_list_result_raises():
    with pytest.raises(TransformError) as exc_info:
        run_transform(ROWS, "return 42")
    assert "int" in str(exc_info.value)
    assert exc_info.value.transform_code == "return 42"


@pytest.mark.unit
def test_missing_return_raises():
    with pytest.raises(TransformError, match="did not return anything"):
        run_transform(ROWS, "rows = list(data)")


@pytest.mark.unit
def test_non_dict_element_raises():
    with pytest.raises(TransformError, match="item 1"):
        run_transform(ROWS, "return [data[0], 'oops']")


@pytest.mark.unit
def test_empty_list_is_a_valid_result():
    assert run_transform(ROWS, "return []") == []


@pytest.mark.unit
def test_runtime_error_is_wrapped():
    with pytest.raises(TransformError, match="Transform raised KeyError"):
        run_transform(ROWS, "return [{'x': row['missing']} for row in data]")


@pytest.mark.unit
def test_syntax_error_is_wrapped():
    with pytest.raises(TransformError, match="Syntax error"):
        run_transform(ROWS, "return [row for row in data")


ESCAPE_THROUGH_GENERATOR_FRAME = """
def gen():
    yield g.gi_frame.f_back
g = gen()
for frame in g:
    break
while frame is not None and 'builtins' not in frame.f_globals:
    frame = frame.f_back
b = frame.f_globals['builtins']
os = b.getattr(b, '__imp' + 'ort__')('os')
return [{'escaped': os.getcwd()}]
"""


@pytest.mark.unit
@pytest.mark.parametrize("code", [
    "import os\nreturn data",
    "from os import path\nreturn data",
    "__import__('os')\nreturn data",
    "open('/etc/passwd')\nreturn data",
    "return data.__class__.__mro__",
    "eval('1')\nreturn data",
    ESCAPE_THROUGH_GENERATOR_FRAME,
    "frame = (row for row in data).gi_frame\nreturn [{'f': str(frame)}]",
    "def walk():\n    yield 1\nreturn [{'n': n} for n in walk()]",
    "try:\n    1 / 0\nexcept Exception as e:\n    tb = e.with_traceback(None).tb_frame\nreturn data",
    "return [{'code': str(len.co_code)}]",
])
def test_escape_attempts_are_rejected(code):
    with pytest.raises(TransformError, match="rejected"):
        run_transform(ROWS, code)


@pytest.mark.unit
def test_math_re_and_datetime_are_available():
    code = """
out = []
for row in data:
    digits = re.sub(r"[^0-9]", "", row["amount"])
    out.append({"name": row["name"], "root": math.sqrt(int(digits)),
                "year": datetime.date(2024, 1, 1).year})
return out
"""
    result = run_transform(ROWS, code)
    assert result[1] == {"name": "b", "root": pytest.approx(5 ** 0.5), "year": 2024}


@pytest.mark.unit
def test_generator_expressions_are_still_allowed():
    code = "return [{'total': sum(float(r['amount'].replace('$', '')) for r in data)}]"
    assert run_transform(ROWS, code) == [{"total": 15.0}]


@pytest.mark.unit
def test_transform_that_never_finishes_is_stopped():
    with pytest.raises(TransformError, match="did not finish within 1 seconds") as exc_info:
        run_transform(ROWS, "while True:\n    pass", timeout=1)
    assert exc_info.value.transform_code == "while True:\n    pass"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_async_runner_does_not_block_the_event_loop():
    ticks = []

    async def ticker():
        for _ in range(3):
            ticks.append(1)
            await asyncio.sleep(0.05)

    ticker_task = asyncio.create_task(ticker())
    with pytest.raises(TransformError, match="did not finish"):
        await run_transform_async(ROWS, "while True:\n    pass", timeout=1)

    # The ticker finished while the transform was still running
    assert len(ticks) == 3
    await ticker_task


@pytest.mark.unit
@pytest.mark.asyncio
async def test_async_runner_returns_rows():
    assert await run_transform_async(ROWS, "return [{'n': len(data)}]") == [{"n": 2}]
