"""Virtual machine for executing blinded bytecode."""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from .environment import Environment, StorePolicy
from .errors import (
    VMError, VMTypeError, InvalidOpcodeError, StackOverflowError,
    StackUnderflowError, CallDepthError, InvalidJumpError,
    TruncatedInstructionError, NoMemoryError, InvalidAddressError,
    UnknownOperationError, HostOperationError, ContainerError, TimeLimitError,
)
from .host import Host
from .memory import Memory2D
from .opcodes import OpCode, DECL_CONST, DECL_INIT, to_rel8
from .protocol import decode, keystream
from .values import (
    UNDEFINED, Function, OneShotGenerator,
    is_callable, is_number, parse_number, strict_equals,
    to_boolean, to_int32, to_number, to_string, to_uint32,
)

logger = logging.getLogger(__name__)

DEFAULT_STACK_SIZE = 1 << 14
DEFAULT_MAX_CALL_DEPTH = 100


def _wrap32(n: int) -> int:
    n &= 0xFFFFFFFF
    return n - 0x100000000 if n & 0x80000000 else n


def _div(a: int, b: int) -> int:
    return 0 if b == 0 else a // b


def _mod(a: int, b: int) -> int:
    if b == 0:
        return 0
    # Remainder takes the sign of the dividend
    r = abs(a) % abs(b)
    return -r if a < 0 else r


@dataclass
class CallFrame:
    """Saved caller state for a function call."""

    ip: int  # Return address
    env: Environment
    sp: int  # Stack height at entry; restored on return


@dataclass
class ExecutionState:
    """Mutable state of one execution."""

    body: bytes  # Blinded
    keys: bytes
    seed: int = 0
    ip: int = 0
    stack: List[Any] = field(default_factory=list)
    halted: bool = False
    frames: List[CallFrame] = field(default_factory=list)
    env: Environment = field(default_factory=Environment)
    mem_base: int = 0
    steps: int = 0
    last_ip: int = 0  # Start of the instruction being executed
    returning: bool = False
    return_value: Any = UNDEFINED

    @property
    def sp(self) -> int:
        return len(self.stack)

    @property
    def result(self) -> Any:
        """Top of stack, or undefined when the stack is empty."""
        return self.stack[-1] if self.stack else UNDEFINED


class VM:
    """Stack virtual machine.

    Args:
        strings: String table the bytecode was compiled with.
        host: Host capabilities (default: a fresh ``Host``).
        stack_size: Value stack capacity.
        max_call_depth: Maximum nesting of function calls.
        store_policy: Handling of stores to undeclared names.
        time_limit: Maximum execution time in seconds.
    """

    def __init__(
        self,
        strings: Sequence[str] = (),
        host: Optional[Host] = None,
        stack_size: int = DEFAULT_STACK_SIZE,
        max_call_depth: int = DEFAULT_MAX_CALL_DEPTH,
        store_policy: StorePolicy = StorePolicy.IMPLICIT,
        time_limit: Optional[float] = None,
    ):
        self.strings = list(strings)
        self.host = host if host is not None else Host()
        self.stack_size = stack_size
        self.max_call_depth = max_call_depth
        self.store_policy = store_policy
        self.time_limit = time_limit

        self.state: Optional[ExecutionState] = None
        self.start_time: Optional[float] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self._handlers: Dict[int, Callable[[], None]] = {
            OpCode.STOP: self._op_stop,
            OpCode.PUSH_U8: self._op_push_u8,
            OpCode.PUSH_I32: self._op_push_i32,
            OpCode.PUSH_STR: self._op_push_str,
            OpCode.ADD: self._arith(lambda a, b: a + b),
            OpCode.SUB: self._arith(lambda a, b: a - b),
            OpCode.MUL: self._arith(lambda a, b: a * b),
            OpCode.DIV: self._arith(_div),
            OpCode.MOD: self._arith(_mod),
            OpCode.XOR: self._arith(lambda a, b: a ^ b),
            OpCode.SHL: self._arith(lambda a, b: a << (b & 31)),
            OpCode.SHR: self._arith(lambda a, b: a >> (b & 31)),
            OpCode.USHR: self._op_ushr,
            OpCode.NEG: self._op_neg,
            OpCode.NOT: self._op_not,
            OpCode.AND: self._logic(lambda a, b: a and b),
            OpCode.OR: self._logic(lambda a, b: a or b),
            OpCode.EQ: self._compare(strict_equals),
            OpCode.NEQ: self._compare(lambda a, b: not strict_equals(a, b)),
            OpCode.GT: self._compare(lambda a, b: self._relational(a, b, ">")),
            OpCode.LT: self._compare(lambda a, b: self._relational(a, b, "<")),
            OpCode.GTE: self._compare(lambda a, b: self._relational(a, b, ">=")),
            OpCode.LTE: self._compare(lambda a, b: self._relational(a, b, "<=")),
            OpCode.JMP: self._op_jmp,
            OpCode.JZ: self._op_jz,
            OpCode.JNZ: self._op_jnz,
            OpCode.GET_IDX: self._op_get_idx,
            OpCode.SET_IDX: self._op_set_idx,
            OpCode.NEW_OBJ: self._op_new_obj,
            OpCode.OBJ_SET: self._op_obj_set,
            OpCode.NEW_ARR: self._op_new_arr,
            OpCode.ARR_PUSH: self._op_arr_push,
            OpCode.DECL: self._op_decl,
            OpCode.LOAD: self._op_load,
            OpCode.STORE: self._op_store,
            OpCode.LOAD_HOST: self._op_load_host,
            OpCode.MAKE_FN: self._op_make_fn,
            OpCode.RET: self._op_ret,
            OpCode.PUSH_SCOPE: self._op_push_scope,
            OpCode.POP_SCOPE: self._op_pop_scope,
            OpCode.CALL_ANY: self._op_call_any,
            OpCode.CAST: self._op_cast,
            OpCode.MEM_SET_BASE: self._op_mem_set_base,
            OpCode.MEM_GET_BASE: self._op_mem_get_base,
            OpCode.MEM_READ: self._op_mem_read,
            OpCode.MEM_WRITE: self._op_mem_write,
            OpCode.GEN_NEW: self._op_gen_new,
            OpCode.YIELD: self._op_yield,
            OpCode.GEN_RESUME: self._op_gen_resume,
            OpCode.CUSTOM: self._op_custom,
        }

    def run(self, bytecode: bytes) -> ExecutionState:
        """Run a bytecode container and return the final state."""
        container = decode(bytecode)
        self.state = ExecutionState(
            body=container.body,
            keys=keystream(container.seed, len(container.body)),
            seed=container.seed,
        )
        self.start_time = time.time()
        logger.info(
            "Run started: %d body bytes, %d strings, seed=0x%08x",
            len(container.body), len(self.strings), container.seed,
        )

        try:
            self._execute()
        except VMError as e:
            if e.ip is None:
                e.ip = self.state.last_ip
            logger.error("Run failed: %s", e)
            raise
        finally:
            if self._loop is not None:
                self._loop.close()
                self._loop = None

        logger.info(
            "Run finished: IP=%d SP=%d steps=%d",
            self.state.ip, self.state.sp, self.state.steps,
        )
        return self.state

    # ---- Fetch / dispatch ----

    def fetch(self) -> int:
        """Fetch and de-blind the byte at IP, advancing IP."""
        st = self.state
        ip = st.ip
        if not 0 <= ip < len(st.body):
            raise TruncatedInstructionError(f"Operand fetch past end of body at {ip}")
        st.ip = ip + 1
        return st.body[ip] ^ st.keys[ip]

    def _execute(self) -> Any:
        """Fetch/dispatch until halt, end of body or a function return.

        Returns the value of a RET that ends a function call, otherwise
        undefined.
        """
        st = self.state
        length = len(st.body)
        while not st.halted:
            if st.ip < 0:
                raise InvalidJumpError(f"Jump to negative address {st.ip}")
            if st.ip >= length:
                break
            self._step()
            if st.returning:
                st.returning = False
                value = st.return_value
                st.return_value = UNDEFINED
                return value
        return UNDEFINED

    def _step(self) -> None:
        st = self.state
        st.last_ip = st.ip
        op = self.fetch()
        handler = self._handlers.get(op)
        if handler is None:
            raise InvalidOpcodeError(op, st.last_ip)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "OP %s @IP=%d SP=%d top=%r",
                OpCode(op).name, st.last_ip, st.sp, st.stack[-4:],
            )
        handler()
        st.steps += 1
        self._check_limits()

    def _check_limits(self) -> None:
        """Check the time limit every 1000 instructions."""
        if self.time_limit and self.state.steps % 1000 == 0:
            if time.time() - self.start_time > self.time_limit:
                raise TimeLimitError("Execution timeout")

    # ---- Stack ----

    def push(self, value: Any) -> None:
        if len(self.state.stack) >= self.stack_size:
            raise StackOverflowError(f"Stack overflow (capacity {self.stack_size})")
        self.state.stack.append(value)

    def pop(self) -> Any:
        if not self.state.stack:
            raise StackUnderflowError("Pop from empty stack")
        return self.state.stack.pop()

    def peek(self) -> Any:
        if not self.state.stack:
            raise StackUnderflowError("Peek at empty stack")
        return self.state.stack[-1]

    def _string(self, index: int) -> str:
        if index >= len(self.strings):
            raise ContainerError(
                f"String index {index} out of range (table has {len(self.strings)})"
            )
        return self.strings[index]

    # ---- Functions ----

    def call_function(self, fn: Any, args: List[Any]) -> Any:
        """Call a VM function or a host callable with ``args``."""
        if isinstance(fn, Function):
            return self._invoke(fn, args)
        if is_callable(fn):
            result = fn(*args)
            return UNDEFINED if result is None else result
        raise VMTypeError(f"{to_string(fn)} is not a function", code=104)

    def _invoke(self, fn: Function, args: List[Any]) -> Any:
        st = self.state
        if len(st.frames) >= self.max_call_depth:
            raise CallDepthError(f"Maximum call depth {self.max_call_depth} exceeded")

        st.frames.append(CallFrame(ip=st.ip, env=st.env, sp=st.sp))
        env = fn.env.child()
        for i in range(fn.nparams):
            env.declare(f"arg{i}", args[i] if i < len(args) else UNDEFINED)
        st.env = env
        st.ip = fn.entry

        result = self._execute()

        frame = st.frames.pop()
        # Drop whatever the body left behind
        del st.stack[frame.sp:]
        st.env = frame.env
        st.ip = frame.ip
        return result

    # ---- Helpers ----

    def _arith(self, fn: Callable[[int, int], int]) -> Callable[[], None]:
        def handler() -> None:
            b = to_int32(self.pop())
            a = to_int32(self.pop())
            self.push(_wrap32(fn(a, b)))
        return handler

    def _compare(self, fn: Callable[[Any, Any], bool]) -> Callable[[], None]:
        def handler() -> None:
            b = self.pop()
            a = self.pop()
            self.push(1 if fn(a, b) else 0)
        return handler

    def _logic(self, fn: Callable[[bool, bool], bool]) -> Callable[[], None]:
        def handler() -> None:
            b = to_boolean(self.pop())
            a = to_boolean(self.pop())
            self.push(1 if fn(a, b) else 0)
        return handler

    def _relational(self, a: Any, b: Any, op: str) -> bool:
        if not (isinstance(a, str) and isinstance(b, str)):
            a = to_number(a)
            b = to_number(b)
        if op == "<":
            return a < b
        if op == ">":
            return a > b
        if op == "<=":
            return a <= b
        return a >= b

    def resolve_address(self, value: Any) -> int:
        """Resolve an absolute int or a relative ``['&', offset]`` pair."""
        if isinstance(value, list) and len(value) == 2 and value[0] == "&":
            offset = to_int32(value[1])
            resolved = (self.state.mem_base + offset) & 0xFFFFFFFF
            logger.debug(
                "ADDR resolve &%d (base=%d) -> %d", offset, self.state.mem_base, resolved
            )
            return resolved
        if is_number(value):
            return value & 0xFFFFFFFF
        raise InvalidAddressError(f"Invalid address type: {type(value).__name__}")

    def _memory(self) -> Memory2D:
        if self.host.memory is None:
            raise NoMemoryError("No memory backend")
        return self.host.memory

    def _cast(self, value: Any, to_type: str) -> Any:
        if to_type == "number":
            if is_number(value):
                return value
            if isinstance(value, str):
                n = parse_number(value)
                if n is not None:
                    return to_int32(n)
            return to_int32(self.host.serialize(value))
        if to_type == "string":
            return to_string(value)
        if to_type == "boolean":
            return to_boolean(value)
        return value

    @staticmethod
    def _property_key(key: Any) -> str:
        return key if isinstance(key, str) else to_string(key)

    @staticmethod
    def _list_index(key: Any) -> Optional[int]:
        if is_number(key):
            return key
        if isinstance(key, str):
            return parse_number(key) if key.strip() else None
        return None

    def _get_index(self, obj: Any, key: Any) -> Any:
        if isinstance(obj, (list, str)):
            if key == "length":
                return len(obj)
            index = self._list_index(key)
            if index is not None and 0 <= index < len(obj):
                return obj[index]
            return UNDEFINED
        if isinstance(obj, dict):
            return obj.get(self._property_key(key), UNDEFINED)
        return UNDEFINED

    def _set_index(self, obj: Any, key: Any, value: Any) -> None:
        if isinstance(obj, list):
            index = self._list_index(key)
            if index is None or index < 0:
                return
            if index >= len(obj):
                obj.extend([UNDEFINED] * (index + 1 - len(obj)))
            obj[index] = value
        elif isinstance(obj, dict):
            obj[self._property_key(key)] = value

    async def _complete(self, awaitable: Any) -> Any:
        return await awaitable

    def _await(self, awaitable: Any) -> Any:
        """Drive a host awaitable to completion before continuing.

        The VM runs the awaitable on its own loop, so it cannot do so from
        inside a thread that is already running one.
        """
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            pass
        else:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise HostOperationError(
                "Cannot complete an awaitable host operation while an event loop is running"
            )
        if self._loop is None:
            self._loop = asyncio.new_event_loop()
        return self._loop.run_until_complete(self._complete(awaitable))

    # ---- Opcode handlers ----

    def _op_stop(self) -> None:
        self.state.halted = True

    def _op_push_u8(self) -> None:
        self.push(self.fetch())

    def _op_push_i32(self) -> None:
        value = 0
        for _ in range(4):
            value = (value << 8) | self.fetch()
        self.push(_wrap32(value))

    def _op_push_str(self) -> None:
        self.push(self._string(self.fetch()))

    def _op_ushr(self) -> None:
        b = to_int32(self.pop())
        a = to_uint32(self.pop())
        self.push(a >> (b & 31))

    def _op_neg(self) -> None:
        self.push(_wrap32(-to_int32(self.pop())))

    def _op_not(self) -> None:
        self.push(0 if to_boolean(self.pop()) else 1)

    def _op_jmp(self) -> None:
        rel = to_rel8(self.fetch())
        self.state.ip += rel

    def _op_jz(self) -> None:
        rel = to_rel8(self.fetch())
        if not to_boolean(self.pop()):
            self.state.ip += rel

    def _op_jnz(self) -> None:
        rel = to_rel8(self.fetch())
        if to_boolean(self.pop()):
            self.state.ip += rel

    def _op_get_idx(self) -> None:
        key = self.pop()
        obj = self.pop()
        self.push(self._get_index(obj, key))

    def _op_set_idx(self) -> None:
        value = self.pop()
        key = self.pop()
        obj = self.pop()
        self._set_index(obj, key, value)
        self.push(value)

    def _op_new_obj(self) -> None:
        self.push({})

    def _op_obj_set(self) -> None:
        key = self.pop()
        value = self.pop()
        obj = self.peek()
        if isinstance(obj, dict):
            obj[self._property_key(key)] = value

    def _op_new_arr(self) -> None:
        count = self.fetch()
        if count > self.state.sp:
            raise StackUnderflowError(f"NEW_ARR {count} with {self.state.sp} values on stack")
        elements = self.state.stack[len(self.state.stack) - count:] if count else []
        del self.state.stack[len(self.state.stack) - count:]
        self.push(elements)

    def _op_arr_push(self) -> None:
        value = self.pop()
        arr = self.peek()
        if isinstance(arr, list):
            arr.append(value)

    def _op_decl(self) -> None:
        name = self._string(self.fetch())
        flags = self.fetch()
        value = self.pop() if flags & DECL_INIT else UNDEFINED
        self.state.env.declare(name, value, const=bool(flags & DECL_CONST))

    def _op_load(self) -> None:
        self.push(self.state.env.load(self._string(self.fetch())))

    def _op_store(self) -> None:
        name = self._string(self.fetch())
        self.state.env.store(name, self.pop(), self.store_policy)

    def _op_load_host(self) -> None:
        self.push(self.host.req(self._string(self.fetch())))

    def _op_make_fn(self) -> None:
        name = self._string(self.fetch())
        nparams = self.fetch()
        rel = to_rel8(self.fetch())
        st = self.state
        self.push(Function(name=name, nparams=nparams, env=st.env, entry=st.ip + rel))

    def _op_ret(self) -> None:
        st = self.state
        value = self.pop()
        if not st.frames:
            # Top-level return ends the program with its value on the stack
            self.push(value)
            st.halted = True
            return
        st.return_value = value
        st.returning = True

    def _op_push_scope(self) -> None:
        st = self.state
        st.env = st.env.child(stack_mark=st.sp)

    def _op_pop_scope(self) -> None:
        st = self.state
        if st.env.stack_mark is not None:
            # Statement values do not outlive their block
            del st.stack[st.env.stack_mark:]
        if st.env.parent is None:
            logger.warning("POP_SCOPE at root scope @IP=%d; starting a fresh root", st.last_ip)
            st.env = Environment()
        else:
            st.env = st.env.parent

    def _op_call_any(self) -> None:
        argc = self.fetch()
        args = [self.pop() for _ in range(argc)]
        args.reverse()
        fn = self.pop()
        self.push(self.call_function(fn, args))

    def _op_cast(self) -> None:
        to_type = self._string(self.fetch())
        self.push(self._cast(self.pop(), to_type))

    def _op_mem_set_base(self) -> None:
        base = to_uint32(self.pop())
        self.state.mem_base = base
        self.push(base)

    def _op_mem_get_base(self) -> None:
        self.push(self.state.mem_base)

    def _op_mem_read(self) -> None:
        addr = self.resolve_address(self.pop())
        self.push(to_int32(self._memory().read(addr)))

    def _op_mem_write(self) -> None:
        value = to_int32(self.pop())
        addr = self.resolve_address(self.pop())
        self._memory().write(addr, value)
        self.push(value)

    def _op_gen_new(self) -> None:
        fn = self.pop()
        self.push(OneShotGenerator(self.call_function(fn, [])))

    def _op_yield(self) -> None:
        self.push(self.pop())

    def _op_gen_resume(self) -> None:
        gen = self.pop()
        sent = self.pop()
        if not isinstance(gen, OneShotGenerator):
            raise VMTypeError(f"{to_string(gen)} is not a generator", code=103)
        self.push(gen.resume(sent))

    def _op_custom(self) -> None:
        name = self._string(self.fetch())
        op = self.host.ops.get(name)
        if op is None:
            raise UnknownOperationError(f"Unknown custom operation {name!r}")
        out = op(self, self.fetch, self.host)
        if inspect.isawaitable(out):
            out = self._await(out)
        if out is not None:
            self.push(out)


def run(
    bytecode: bytes,
    strings: Sequence[str],
    host: Optional[Host] = None,
    **config: Any,
) -> ExecutionState:
    """Execute a container with its string table and return the final state."""
    return VM(strings, host, **config).run(bytecode)
