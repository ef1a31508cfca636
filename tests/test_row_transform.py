import math
import os
import sys
import unittest
from datetime import date, datetime, timezone


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from trellis.row_transform import MISSING, TYPE_TRANSFORMS, FieldType, coerce_row, coerce_value


class TestFieldCoercion(unittest.TestCase):
    def test_number_reads_numeric_prefix(self) -> None:
        self.assertEqual(coerce_value(FieldType.NUMBER, "3.14abc"), 3.14)
        self.assertEqual(coerce_value("number", "42"), 42.0)
        self.assertTrue(math.isnan(coerce_value(FieldType.NUMBER, "abc")))

    def test_number_ignores_non_ascii_digits(self) -> None:
        self.assertTrue(math.isnan(coerce_value(FieldType.NUMBER, "\u0663")))
        self.assertEqual(coerce_value(FieldType.NUMBER, "7\u0663"), 7.0)

    def test_number_empty_values(self) -> None:
        self.assertIsNone(coerce_value(FieldType.NUMBER, ""))
        self.assertIsNone(coerce_value(FieldType.NUMBER, None))
        self.assertIs(coerce_value(FieldType.NUMBER), MISSING)

    def test_json_malformed_returns_original(self) -> None:
        self.assertEqual(coerce_value(FieldType.JSON, "{bad"), "{bad")
        self.assertEqual(coerce_value(FieldType.JSON, '{"a": 1}'), {"a": 1})
        self.assertIs(coerce_value(FieldType.JSON, ""), MISSING)

    def test_link_normalizes_to_ids(self) -> None:
        self.assertEqual(coerce_value(FieldType.LINK, [{"_id": "r1"}, {"_id": "r2"}]), ["r1", "r2"])
        self.assertEqual(coerce_value(FieldType.LINK, "r1"), ["r1"])
        self.assertEqual(coerce_value(FieldType.LINK, ""), [])
        self.assertEqual(coerce_value(FieldType.LINK, None), [])

    def test_datetime_converts_native_values(self) -> None:
        value = datetime(2022, 1, 2, 3, 4, 5, 678000, tzinfo=timezone.utc)
        self.assertEqual(coerce_value(FieldType.DATETIME, value), "2022-01-02T03:04:05.678Z")
        self.assertEqual(coerce_value(FieldType.DATETIME, date(2022, 1, 2)), "2022-01-02T00:00:00.000Z")
        self.assertEqual(coerce_value(FieldType.DATETIME, "2022-01-02"), "2022-01-02")

    def test_boolean_literals(self) -> None:
        self.assertIs(coerce_value(FieldType.BOOLEAN, "true"), True)
        self.assertIs(coerce_value(FieldType.BOOLEAN, "false"), False)
        self.assertIsNone(coerce_value(FieldType.BOOLEAN, ""))

    def test_text_types_default_to_empty_string(self) -> None:
        for field_type in (FieldType.STRING, FieldType.BARCODEQR, FieldType.FORMULA, FieldType.LONGFORM):
            self.assertEqual(coerce_value(field_type, None), "")
            self.assertEqual(coerce_value(field_type, ""), "")

    def test_auto_is_never_stored(self) -> None:
        self.assertIs(coerce_value(FieldType.AUTO, 7), MISSING)

    def test_defaults_are_not_shared(self) -> None:
        first = coerce_value(FieldType.ARRAY, "")
        first.append("x")
        self.assertEqual(coerce_value(FieldType.ARRAY, ""), [])

    def test_unknown_type_passes_through(self) -> None:
        self.assertEqual(coerce_value("geo", "x"), "x")

    def test_table_is_closed_and_immutable(self) -> None:
        self.assertEqual(set(TYPE_TRANSFORMS), set(FieldType))
        with self.assertRaises(TypeError):
            TYPE_TRANSFORMS[FieldType.STRING] = None

    def test_coerce_row_drops_missing_columns(self) -> None:
        schema = {
            "name": {"type": "string"},
            "age": {"type": "number"},
            "id": {"type": "auto"},
            "meta": {"type": "json"},
        }
        row = coerce_row(schema, {"name": None, "age": "31", "id": 5, "meta": "", "extra": "kept"})
        self.assertEqual(row, {"name": "", "age": 31.0, "extra": "kept"})


if __name__ == "__main__":
    unittest.main()
