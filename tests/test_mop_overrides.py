import gc
import threading

import pytest

from mop.mop_config import DispatchConfig
from mop.mop_datatypes import MethodTable, HookKind, Native, Signature
from mop.mop_dispatcher import Dispatcher
from mop.mop_overrides import InstanceOverrideStore


class Gadget:
    def __init__(self, label="g"):
        self.label = label


class AlwaysEqual:
    def __eq__(self, other):
        return True

    def __hash__(self):
        return 0


class Unhashable:
    __hash__ = None


def make_dispatcher():
    return Dispatcher(config=DispatchConfig())


def _table(result):
    return MethodTable.fragment({"ping": lambda self: result})


# --- Store ---

def test_get_override_for_plain_object_is_none():
    store = InstanceOverrideStore()
    assert store.get_override(Gadget()) is None
    assert len(store) == 0


def test_set_and_get_override():
    store = InstanceOverrideStore()
    g = Gadget()
    store.set_override(g, _table("pong"))
    table = store.get_override(g)
    assert table.lookup_method("ping", Signature([])).fn(g) == "pong"
    assert g in store


def test_set_override_accepts_a_mapping():
    store = InstanceOverrideStore()
    g = Gadget()
    store.set_override(g, {"ping": lambda self: "mapped"})
    assert store.get_override(g).candidates("ping")


def test_override_does_not_keep_its_object_alive():
    store = InstanceOverrideStore()
    g = Gadget()
    store.set_override(g, _table("pong"))
    assert len(store) == 1
    del g
    gc.collect()
    assert len(store) == 0


def test_overrides_are_keyed_by_identity_not_equality():
    d = make_dispatcher()
    d.register_native_method(AlwaysEqual, "ping", [], lambda self: "type")
    a, b = AlwaysEqual(), AlwaysEqual()
    assert a == b
    d.add_dynamic_method(a, "ping", [], lambda self: "mine")
    assert d.dispatch(a, "ping") == "mine"
    assert d.dispatch(b, "ping") == "type"


def test_unhashable_objects_can_carry_overrides():
    d = make_dispatcher()
    u = Unhashable()
    d.add_dynamic_method(u, "ping", [], lambda self: "ok")
    assert d.dispatch(u, "ping") == "ok"


def test_objects_without_weakref_support_are_rejected():
    store = InstanceOverrideStore()
    with pytest.raises(TypeError):
        store.set_override(42, _table("x"))
    with pytest.raises(TypeError):
        store.set_override(("a", "tuple"), _table("x"))


def test_discard_removes_the_entry():
    store = InstanceOverrideStore()
    g = Gadget()
    store.set_override(g, _table("pong"))
    assert store.discard(g) is True
    assert store.get_override(g) is None
    assert store.discard(g) is False


def test_update_builds_on_the_current_fragment():
    store = InstanceOverrideStore(stripes=1)
    g = Gadget()
    one = Native(lambda self: 1, Signature([]), name="one")
    two = Native(lambda self: 2, Signature([]), name="two")
    store.update(g, lambda t: t.with_method("one", one))
    store.update(g, lambda t: t.with_method("two", two))
    table = store.get_override(g)
    assert set(table.methods) == {"one", "two"}
    assert table.owner is Gadget


def test_stripes_must_be_positive():
    with pytest.raises(ValueError):
        InstanceOverrideStore(stripes=0)


def test_concurrent_updates_on_one_object_are_not_lost():
    store = InstanceOverrideStore(stripes=4)
    g = Gadget()
    workers = 8
    per_worker = 50

    def add_methods(worker):
        for i in range(per_worker):
            name = f"m{worker}_{i}"
            impl = Native(lambda self: None, Signature([]), name=name)
            store.update(g, lambda t, name=name, impl=impl: t.with_method(name, impl))

    threads = [threading.Thread(target=add_methods, args=(w,)) for w in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(store.get_override(g).methods) == workers * per_worker


# --- Through the dispatcher ---

def test_instance_hook_applies_to_one_object():
    d = make_dispatcher()
    g, h = Gadget(), Gadget()
    d.set_hook(g, HookKind.METHOD_MISSING, lambda receiver, name, args: "rescued")
    assert d.dispatch(g, "anything") == "rescued"
    assert d.try_dispatch(h, "anything").status == "error"


def test_set_override_replaces_the_whole_fragment():
    d = make_dispatcher()
    g = Gadget()
    d.add_dynamic_method(g, "a", [], lambda self: "a")
    d.set_override(g, {"b": lambda self: "b"})
    assert d.dispatch(g, "b") == "b"
    assert d.try_dispatch(g, "a").status == "error"


def test_instance_override_inherits_nothing_from_other_objects():
    d = make_dispatcher()
    d.register_native_method(Gadget, "label_of", [], lambda self: self.label)
    g = Gadget("one")
    d.add_dynamic_method(g, "label_of", [], lambda self: "override:" + self.label)
    assert d.dispatch(g, "label_of") == "override:one"
    assert d.dispatch(Gadget("two"), "label_of") == "two"
