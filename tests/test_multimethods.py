import numbers
from typing import Optional, Union

import pytest

from mop.mop_config import DispatchConfig
from mop.mop_datatypes import Native, Signature
from mop.mop_dispatcher import Dispatcher, param_distance, rank_signature, select_overloads
from mop.mop_errors import AmbiguousDispatchError, MissingMemberError


class Calc:
    pass


class Base:
    pass


class Derived(Base):
    pass


class MyStr(str):
    pass


def make_dispatcher():
    return Dispatcher(config=DispatchConfig())


# --- Distance and ranking ---

def test_param_distance_orders_exact_nominal_virtual_object():
    assert param_distance(int, int) == (0, 0)
    assert param_distance(Base, Derived) == (1, 1)
    assert param_distance(numbers.Number, int)[0] == 2
    assert param_distance(object, int) == (3, 0)
    assert param_distance(str, int) is None


def test_param_distance_union_takes_best_member():
    assert param_distance((str, int), int) == (0, 0)
    assert param_distance((Base, str), Derived) == (1, 1)
    assert param_distance((str, bytes), int) is None


def test_rank_signature_rejects_wrong_count():
    assert rank_signature(Signature([int]), [int, int]) is None
    assert rank_signature(Signature([int], rest=int), [int, int, int]) == ((0, 0), (0, 0), (0, 0))


def test_select_overloads_returns_all_tied_candidates():
    candidates = {Signature([int]): "a", Signature([Union[int, str]]): "b", Signature([str]): "c"}
    assert sorted(select_overloads(candidates, [int])) == ["a", "b"]
    assert select_overloads(candidates, [float]) == []


# --- Scenario E ---

def test_scenario_e_exact_int_beats_number():
    d = make_dispatcher()
    d.register_native_method(Calc, "sum", [int, int], lambda self, a, b: "int,int")
    d.register_native_method(Calc, "sum", [numbers.Number, numbers.Number], lambda self, a, b: "number,number")
    c = Calc()
    assert d.dispatch(c, "sum", [1, 2]) == "int,int"
    assert d.dispatch(c, "sum", [1.5, 2.5]) == "number,number"


def test_mixed_arguments_fall_back_to_the_broader_overload():
    d = make_dispatcher()
    d.register_native_method(Calc, "sum", [int, int], lambda self, a, b: "int,int")
    d.register_native_method(Calc, "sum", [numbers.Number, numbers.Number], lambda self, a, b: "number,number")
    assert d.dispatch(Calc(), "sum", [1, 2.0]) == "number,number"


# --- Specificity ---

def test_str_overload_beats_object_overload():
    d = make_dispatcher()
    d.register_native_method(Calc, "f", [object], lambda self, x: "object")
    d.register_native_method(Calc, "f", [str], lambda self, x: "str")
    c = Calc()
    assert d.dispatch(c, "f", ["s"]) == "str"
    assert d.dispatch(c, "f", [MyStr("s")]) == "str"
    assert d.dispatch(c, "f", [5]) == "object"


def test_nearest_base_class_wins():
    d = make_dispatcher()
    d.register_native_method(Calc, "f", [Base], lambda self, x: "base")
    d.register_native_method(Calc, "f", [Derived], lambda self, x: "derived")
    assert d.dispatch(Calc(), "f", [Derived()]) == "derived"
    assert d.dispatch(Calc(), "f", [Base()]) == "base"


def test_bool_prefers_its_own_overload():
    d = make_dispatcher()
    d.register_native_method(Calc, "f", [int], lambda self, x: "int")
    d.register_native_method(Calc, "f", [bool], lambda self, x: "bool")
    assert d.dispatch(Calc(), "f", [True]) == "bool"
    assert d.dispatch(Calc(), "f", [1]) == "int"


def test_deeper_abc_is_more_specific():
    d = make_dispatcher()
    d.register_native_method(Calc, "f", [numbers.Number], lambda self, x: "number")
    d.register_native_method(Calc, "f", [numbers.Integral], lambda self, x: "integral")
    assert d.dispatch(Calc(), "f", [3]) == "integral"
    assert d.dispatch(Calc(), "f", [3.5]) == "number"


def test_left_argument_breaks_ties():
    d = make_dispatcher()
    d.register_native_method(Calc, "pair", [str, object], lambda self, a, b: "left")
    d.register_native_method(Calc, "pair", [object, str], lambda self, a, b: "right")
    assert d.dispatch(Calc(), "pair", ["a", "b"]) == "left"


def test_equally_specific_overloads_are_ambiguous():
    d = make_dispatcher()
    d.register_native_method(Calc, "f", [Union[int, str]], lambda self, x: "union")
    d.register_native_method(Calc, "f", [int], lambda self, x: "int")
    with pytest.raises(AmbiguousDispatchError) as excinfo:
        d.dispatch(Calc(), "f", [1])
    err = excinfo.value
    assert isinstance(err, TypeError)
    assert len(err.candidates) == 2
    assert "Tied candidates:" in str(err)
    # A str argument only fits the union, so there is no tie.
    assert d.dispatch(Calc(), "f", ["x"]) == "union"


def test_argument_count_selects_overload():
    d = make_dispatcher()
    d.register_native_method(Calc, "g", [], lambda self: 0)
    d.register_native_method(Calc, "g", [object], lambda self, x: 1)
    d.register_native_method(Calc, "g", [object, object], lambda self, x, y: 2)
    c = Calc()
    assert [d.dispatch(c, "g", args) for args in ([], [1], [1, 2])] == [0, 1, 2]


def test_inapplicable_overloads_are_a_miss():
    d = make_dispatcher()
    d.register_native_method(Calc, "f", [int], lambda self, x: "int")
    with pytest.raises(MissingMemberError):
        d.dispatch(Calc(), "f", ["nope"])


# --- Variadic overloads ---

def test_exact_arity_beats_variadic():
    d = make_dispatcher()
    join = Native(lambda self, sep, *parts: sep.join(map(str, parts)), Signature([str], rest=int))
    d.register_native_method(Calc, "join", None, join)
    d.register_native_method(Calc, "join", [str, int], lambda self, sep, n: "exact")
    c = Calc()
    assert d.dispatch(c, "join", ["-", 1]) == "exact"
    assert d.dispatch(c, "join", ["-", 1, 2]) == "1-2"
    assert d.dispatch(c, "join", ["-"]) == ""


def test_variadic_signature_inferred_from_annotations():
    def total(self, *nums: int):
        return sum(nums)

    d = make_dispatcher()
    impl = d.register_native_method(Calc, "total", None, total)
    assert impl.signature == Signature([], rest=int)
    assert d.dispatch(Calc(), "total", [1, 2, 3]) == 6
    with pytest.raises(MissingMemberError):
        d.dispatch(Calc(), "total", [1, "2"])


# --- Annotations and hints ---

def test_parameter_types_inferred_from_annotations():
    def area(self, w: int, h: int):
        return w * h

    def area_f(self, w: float, h: float):
        return round(w * h, 2)

    d = make_dispatcher()
    d.register_native_method(Calc, "area", None, area)
    d.register_native_method(Calc, "area", None, area_f)
    assert d.dispatch(Calc(), "area", [2, 3]) == 6
    assert d.dispatch(Calc(), "area", [1.5, 2.0]) == 3.0


def test_optional_annotation_accepts_none():
    def describe(self, value: Optional[int]):
        return "none" if value is None else "int"

    d = make_dispatcher()
    d.register_native_method(Calc, "describe", None, describe)
    assert d.dispatch(Calc(), "describe", [None]) == "none"
    assert d.dispatch(Calc(), "describe", [4]) == "int"


def test_static_hints_only_name_the_type_of_none():
    d = make_dispatcher()
    d.register_native_method(Calc, "f", [str], lambda self, x: "str")
    d.register_native_method(Calc, "f", [int], lambda self, x: "int")
    c = Calc()
    with pytest.raises(MissingMemberError):
        d.dispatch(c, "f", [None])
    assert d.dispatch(c, "f", [None], static_hints=[str]) == "str"
    assert d.dispatch(c, "f", [None], static_hints={0: int}) == "int"
    # A runtime type is never overridden by a hint.
    assert d.dispatch(c, "f", [5], static_hints=[str]) == "int"


def test_typing_form_static_hints_are_normalized():
    d = make_dispatcher()
    d.register_native_method(Calc, "f", [object], lambda self, x: "object")
    d.register_native_method(Calc, "f", [str], lambda self, x: "str")
    c = Calc()
    assert d.dispatch(c, "f", [None], static_hints=[Optional[str]]) == "str"
    assert d.dispatch(c, "f", [None], static_hints=[Union[str, None]]) == "str"
    assert d.try_dispatch(c, "f", [None], static_hints=[Optional[str]]).value == "str"


def test_static_hint_naming_several_classes_is_rejected():
    d = make_dispatcher()
    d.register_native_method(Calc, "f", [object], lambda self, x: "object")
    with pytest.raises(TypeError) as excinfo:
        d.dispatch(Calc(), "f", [None], static_hints=[Union[int, str]])
    assert "Static hint" in str(excinfo.value)
    with pytest.raises(TypeError):
        d.dispatch(Calc(), "f", [None], static_hints=["str"])


def test_static_hints_can_be_disabled():
    d = Dispatcher(config=DispatchConfig(use_static_hints=False))
    d.register_native_method(Calc, "f", [str], lambda self, x: "str")
    with pytest.raises(MissingMemberError):
        d.dispatch(Calc(), "f", [None], static_hints=[str])


# --- Across the class chain ---

def test_overloads_are_collected_across_the_chain():
    d = make_dispatcher()
    d.register_native_method(Base, "f", [str], lambda self, x: "base-str")
    d.register_native_method(Derived, "f", [object], lambda self, x: "derived-object")
    obj = Derived()
    assert d.dispatch(obj, "f", ["x"]) == "base-str"
    assert d.dispatch(obj, "f", [1]) == "derived-object"


def test_same_signature_on_derived_class_is_not_ambiguous():
    d = make_dispatcher()
    d.register_native_method(Base, "f", [object], lambda self, x: "base")
    d.register_native_method(Derived, "f", [object], lambda self, x: "derived")
    assert d.dispatch(Derived(), "f", [1]) == "derived"
