"""Tests for the exception, async, threading and template analyzers."""

from cxxport.frontend import parse
from cxxport.middleend import analyze
from cxxport.middleend.templates import go_constraint, rust_bounds


def analyzed(source: str):
    return analyze(parse(source))


def function(source: str, name: str):
    ir = analyzed(source)
    for func in ir.all_functions():
        if func.name == name:
            return func
    raise KeyError(name)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


def test_throw_site_marks_function():
    func = function(
        'int checked(int x) { if (x < 0) throw std::runtime_error("negative"); return x; }',
        "checked",
    )
    assert func.may_throw
    assert func.exceptions.thrown_types == ["std::runtime_error"]
    assert func.exceptions.spec.can_throw


def test_rethrow_may_throw_without_type():
    func = function("void again() { try { work(); } catch (...) { throw; } }", "again")
    assert func.may_throw
    assert func.exceptions.thrown_types == []


def test_plain_function_does_not_throw():
    assert not function("int id(int x) { return x; }", "id").may_throw


def test_noexcept_spec():
    spec = function("int safe(int x) noexcept { return x; }", "safe").exceptions.spec
    assert spec.is_noexcept
    assert not spec.can_throw


def test_noexcept_false_can_throw():
    spec = function("int risky(int x) noexcept(false) { return x; }", "risky").exceptions.spec
    assert spec.can_throw
    assert not spec.is_noexcept


def test_dynamic_exception_specs():
    assert not function("void none() throw() {}", "none").exceptions.spec.can_throw
    spec = function("void some() throw(BadInput, Timeout) {}", "some").exceptions.spec
    assert spec.can_throw
    assert spec.throw_types == ["BadInput", "Timeout"]


def test_try_catch_blocks():
    source = """\
void run() {
    try {
        step();
    } catch (const std::exception& e) {
        report(e);
    } catch (...) {
    }
}
"""
    blocks = function(source, "run").exceptions.try_catch_blocks
    assert len(blocks) == 1
    block = blocks[0]
    assert block.try_body == "step();"
    assert [(c.exception_type, c.exception_var) for c in block.catch_clauses] == [
        ("std::exception", "e"),
        ("...", ""),
    ]
    assert block.catch_clauses[0].handler_body == "report(e);"
    assert block.has_catch_all


def test_exception_classes_marked_transitively():
    source = """\
class AppError : public std::runtime_error {
public:
    AppError(const std::string& m) : std::runtime_error(m) {}
};
class DiskError : public AppError {
public:
    DiskError() : AppError("disk") {}
};
class Plain {};
"""
    ir = analyzed(source)
    flags = {c.name: c.is_exception for c in ir.classes}
    assert flags == {"AppError": True, "DiskError": True, "Plain": False}


# ---------------------------------------------------------------------------
# Coroutines, futures, std::async
# ---------------------------------------------------------------------------


def test_coroutine_operations():
    source = """\
Task<int> compute() {
    int v = co_await fetch();
    co_return v + 1;
}
"""
    func = function(source, "compute")
    coro = func.asyncs.coroutine
    assert coro.is_coroutine and coro.uses_co_await and coro.uses_co_return
    assert not coro.is_generator
    assert [(op.op, op.expression, op.target) for op in coro.operations] == [
        ("await", "fetch()", "v"),
        ("return", "v + 1", ""),
    ]
    assert func.is_async


def test_generator():
    source = "Generator<int> count(int n) { for (int i = 0; i < n; ++i) { co_yield i; } }"
    coro = function(source, "count").asyncs.coroutine
    assert coro.is_generator
    assert coro.uses_co_yield
    assert coro.operations[0].expression == "i"


def test_promise_and_future():
    source = """\
int handoff() {
    std::promise<int> p;
    std::future<int> f = p.get_future();
    p.set_value(3);
    return f.get();
}
"""
    asyncs = function(source, "handoff").asyncs
    assert asyncs.is_async
    promise, future = asyncs.futures
    assert promise.var_name == "p" and promise.is_promise
    assert promise.value_type.name == "int"
    assert future.var_name == "f" and future.promise_var == "p"


def test_async_launches():
    source = """\
void launch() {
    auto r = std::async(std::launch::async, work, 3);
    std::async(cleanup);
}
"""
    tasks = function(source, "launch").asyncs.tasks
    bound, fire = tasks
    assert (bound.callable, bound.arguments, bound.var_name, bound.launch_policy) == ("work", ["3"], "r", "async")
    assert not bound.detached
    assert fire.callable == "cleanup"
    assert fire.detached


def test_synchronous_function_is_not_async():
    func = function("int id(int x) { return x; }", "id")
    assert not func.is_async
    assert not func.asyncs.coroutine.is_coroutine


# ---------------------------------------------------------------------------
# Threading
# ---------------------------------------------------------------------------


def test_lock_guard_guards_fields():
    source = """\
class Counter {
public:
    void increment() {
        std::lock_guard<std::mutex> lock(mu);
        count++;
    }
    int peek() const { return count; }
private:
    std::mutex mu;
    int count = 0;
};
"""
    ir = analyzed(source)
    counter = ir.classes[0]
    mutex = counter.threading.mutexes[0]
    assert (mutex.name, mutex.kind, mutex.is_field) == ("mu", "mutex", True)
    assert mutex.guarded_fields == ["count"]
    lock = counter.method_named("increment").threading.locks[0]
    assert (lock.lock_type, lock.var_name, lock.mutex_names) == ("lock_guard", "lock", ["mu"])
    assert counter.method_named("peek").threading.locks == []


def test_explicit_unlock_ends_scope():
    source = """\
class Pair {
public:
    void update() {
        std::unique_lock<std::mutex> lk(this->mu);
        a = 1;
        lk.unlock();
        b = 2;
    }
private:
    std::mutex mu;
    int a;
    int b;
};
"""
    cls = analyzed(source).classes[0]
    assert cls.threading.mutexes[0].guarded_fields == ["a"]
    lock = cls.method_named("update").threading.locks[0]
    assert lock.unlocks_explicitly
    assert lock.mutex_names == ["mu"]


def test_manual_lock_calls():
    source = """\
class Box {
public:
    void put(int v) {
        mu.lock();
        value = v;
        mu.unlock();
        other = v;
    }
private:
    std::mutex mu;
    int value;
    int other;
};
"""
    cls = analyzed(source).classes[0]
    assert cls.threading.mutexes[0].guarded_fields == ["value"]
    lock = cls.method_named("put").threading.locks[0]
    assert (lock.lock_type, lock.var_name) == ("lock", "")
    assert lock.unlocks_explicitly


def test_thread_sites():
    source = """\
void spawn() {
    std::thread t(work, 5);
    std::jthread j(loop);
    t.join();
}
"""
    threads = function(source, "spawn").threading.threads
    t, j = threads
    assert (t.var_name, t.callable, t.arguments, t.is_joined) == ("t", "work", ["5"], True)
    assert j.is_jthread
    assert not j.is_joined


def test_atomic_field_operations():
    source = """\
class Stats {
public:
    void record() {
        hits++;
        hits.fetch_add(2);
    }
private:
    std::atomic<int> hits;
};
"""
    cls = analyzed(source).classes[0]
    field_atomic = cls.threading.atomics[0]
    assert field_atomic.value_type.name == "int"
    assert field_atomic.operations == ["increment", "fetch_add"]
    method_atomic = cls.method_named("record").threading.atomics[0]
    assert method_atomic.is_field
    assert method_atomic.operations == ["increment", "fetch_add"]


def test_condition_variable_sites():
    source = """\
class Gate {
public:
    void wait_open() {
        std::unique_lock<std::mutex> lk(mu);
        cv.wait(lk, [this] { return open; });
    }
    void release() {
        cv.notify_all();
    }
private:
    std::mutex mu;
    std::condition_variable cv;
    bool open = false;
};
"""
    cls = analyzed(source).classes[0]
    wait_cv = cls.method_named("wait_open").threading.condition_variables[0]
    assert wait_cv.lock_vars == ["lk"]
    assert wait_cv.predicates == ["[this] { return open; }"]
    release_cv = cls.method_named("release").threading.condition_variables[0]
    assert release_cv.notifies_all
    assert not release_cv.notifies_one


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


def test_type_and_non_type_parameters():
    ir = analyzed("template <typename T, size_t N>\nclass Ring { T items[N]; };\n")
    ring = ir.classes[0]
    assert ring.templates.is_template
    t, n = ring.templates.parameters
    assert (t.kind, t.name) == ("type", "T")
    assert (n.kind, n.name) == ("non_type", "N")
    assert n.param_type.name == "size_t"


def test_concept_constrained_parameter():
    func = function("template <std::integral T>\nT twice(T x) { return x * 2; }\n", "twice")
    param = func.templates.parameters[0]
    assert param.constraints == ["std::integral"]
    assert rust_bounds(param) == ["Copy", "Ord"]
    assert go_constraint(param).startswith("~int | ~int8")


def test_requires_clause_constrains_parameter():
    source = "template <typename T>\nrequires std::totally_ordered<T>\nT biggest(T a, T b) { return a; }\n"
    param = function(source, "biggest").templates.parameters[0]
    assert param.constraints == ["std::totally_ordered"]
    assert go_constraint(param) == "cmp.Ordered"


def test_unconstrained_parameter_is_any():
    param = function("template <typename T>\nT same(T x) { return x; }\n", "same").templates.parameters[0]
    assert go_constraint(param) == "any"
    assert rust_bounds(param) == []


def test_full_specialization():
    ir = analyzed("template <typename T>\nclass Box {};\ntemplate <>\nclass Box<int> {};\n")
    generic, special = ir.classes
    assert not generic.templates.specialization.is_specialization
    assert special.templates.specialization.is_specialization
    assert not special.templates.specialization.is_partial
    assert special.templates.specialization.specialized_args == ["int"]
