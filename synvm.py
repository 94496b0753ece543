#!/usr/bin/env python
"""Virtual machine for the Synacor challenge architecture.

15-bit values, eight registers, an unbounded stack and 32768 words of
memory. Raw operands 0-32767 are literals, 32768-32775 name registers.
"""
import sys, itertools, argparse, logging
from array import array
from collections import namedtuple
from enum import Enum

from rich.console import Console
from rich.logging import RichHandler

log = logging.getLogger('synvm')

MEMORY_SIZE = 32768
MODULUS = 32768
REGISTER_BASE = 32768
NUM_REGISTERS = 8

class VmException(Exception): pass

class VmFault(VmException):
    kind = 'fault'

class InvalidValue(VmFault):
    kind = 'bad operand'

class InvalidRegister(VmFault):
    kind = 'bad operand'

class InvalidAddress(VmFault):
    kind = 'bad address'

class StackUnderflow(VmFault):
    kind = 'stack underflow'

class InputExhausted(VmFault):
    kind = 'input exhausted'

class DivisionByZero(VmFault):
    kind = 'division by zero'

class InvalidInput(VmFault):
    kind = 'bad input'

class StopReason(Enum):
    HALT = 'HALT'
    EMPTY_RETURN = 'EMPTY_RETURN'
    INVALID_OPCODE = 'INVALID_OPCODE'
    FAULT = 'FAULT'

class RegisterBank(object):
    def __init__(self):
        self.registers = array('H', itertools.repeat(0, NUM_REGISTERS))

    def __getitem__(self, reg):
        return self.registers[reg]

    def __setitem__(self, reg, value):
        self.registers[reg] = value

    def __len__(self):
        return len(self.registers)

    def _index(self, raw):
        if REGISTER_BASE <= raw < REGISTER_BASE + NUM_REGISTERS:
            return raw - REGISTER_BASE
        raise InvalidRegister("Operand %s does not name a register" % raw)

    def load(self, raw):
        return self.registers[self._index(raw)]

    def store(self, raw, value):
        self.registers[self._index(raw)] = value

class Memory(object):
    def __init__(self):
        self.memory = array('H', itertools.repeat(0, MEMORY_SIZE))

    def __getitem__(self, address):
        if 0 <= address < MEMORY_SIZE:
            return self.memory[address]
        raise InvalidAddress("Address %s is invalid" % address)

    def __setitem__(self, address, value):
        if 0 <= address < MEMORY_SIZE:
            self.memory[address] = value
        else:
            raise InvalidAddress("Address %s is invalid" % address)

    def __len__(self):
        return len(self.memory)

    def read(self, start, length):
        if start < 0 or start + length > MEMORY_SIZE:
            raise InvalidAddress("Read of %s words at %s runs past memory" % (length, start))
        return self.memory[start:start + length]

    def load(self, words):
        size = len(words)
        if size > MEMORY_SIZE:
            raise InvalidAddress("Image of %s words does not fit in memory" % size)
        self.memory[0:size] = array('H', words)
        return size

class Stack(object):
    def __init__(self):
        self.stack = array('H')

    def __len__(self):
        return len(self.stack)

    def __bool__(self):
        return len(self.stack) > 0

    def push(self, value):
        self.stack.append(value)

    def pop(self):
        try:
            return self.stack.pop()
        except IndexError:
            raise StackUnderflow("Pop from empty stack") from None

class Instruction(namedtuple('Instruction', 'opcode name args')):
    """A decoded instruction; args are raw, unresolved operand words."""
    __slots__ = ()

    @property
    def size(self):
        return 1 + len(self.args)

class VirtualMachine:
    ops = {
        # opcode: ('name', args)
        0: ('halt', 0),
        1: ('set', 2),
        2: ('push', 1),
        3: ('pop', 1),
        4: ('eq', 3),
        5: ('gt', 3),
        6: ('jmp', 1),
        7: ('jt', 2),
        8: ('jf', 2),
        9: ('add', 3),
        10: ('mult', 3),
        11: ('mod', 3),
        12: ('and', 3),
        13: ('or', 3),
        14: ('not', 2),
        15: ('rmem', 2),
        16: ('wmem', 2),
        17: ('call', 1),
        18: ('ret', 0),
        19: ('out', 1),
        20: ('in', 1),
        21: ('noop', 0),
    }

    def __init__(self, input=None, output=None):
        self.registers = RegisterBank()
        self.memory = Memory()
        self.stack = Stack()
        self.ip = 0
        self._input = input
        self._output = output
        self.halted = False
        self.stop_reason = None
        self.fault = None

    @property
    def input(self):
        return self._input if self._input is not None else sys.stdin.buffer

    @property
    def output(self):
        return self._output if self._output is not None else sys.stdout

    def load(self, filename):
        """Load a program image from disk, returning the number of bytes read."""
        with open(filename, 'rb') as f:
            data = f.read()
        words = self.load_bytes(data)
        log.debug("Loaded %s bytes (%s words) from %s", len(data), words, filename)
        return len(data)

    def load_bytes(self, data):
        """Load little-endian word pairs at address 0; a trailing odd byte is dropped."""
        code_array = array('H')
        code_array.frombytes(data[:len(data) - len(data) % 2])
        if sys.byteorder == 'big':
            code_array.byteswap()
        return self.memory.load(code_array)

    def run(self):
        try:
            while self.step():
                pass
        except VmFault as e:
            log.error("Fault (%s) at ip %s: %s", e.kind, self.ip, e)
        return self.stop_reason

    def step(self):
        if self.halted:
            return False

        try:
            instruction = self.decode(self.ip)
            self.ip += instruction.size
            if instruction.name == 'invalid':
                reason = self.op_invalid(instruction.opcode)
            else:
                op_fn = getattr(self, 'op_%s' % instruction.name)
                reason = op_fn(*instruction.args)
        except VmFault as e:
            self.stop(StopReason.FAULT)
            self.fault = e
            raise

        if reason is not None:
            self.stop(reason)
            return False
        return True

    def stop(self, reason):
        self.halted = True
        self.stop_reason = reason
        log.debug("Stopped at ip %s: %s", self.ip, reason.value)

    def decode(self, addr):
        opcode = self.memory[addr]
        try:
            op_name, num_args = self.ops[opcode]
        except KeyError:
            return Instruction(opcode, 'invalid', ())

        # Read operands from memory following opcode
        args = tuple(self.memory.read(addr + 1, num_args))
        return Instruction(opcode, op_name, args)

    def value(self, value):
        if 0 <= value < REGISTER_BASE:
            return value

        if REGISTER_BASE <= value < REGISTER_BASE + NUM_REGISTERS:
            return self.registers[value - REGISTER_BASE]

        raise InvalidValue("Value %s is invalid as a number or a register" % value)

    def diagnostic(self, message):
        self.output.write(message + '\n')
        self.output.flush()

    def op_halt(self):
        self.diagnostic("Got HALT, stopping.")
        return StopReason.HALT

    def op_set(self, reg, value):
        self.registers.store(reg, self.value(value))

    def op_push(self, value):
        value = self.value(value)
        self.stack.push(value)

    def op_pop(self, reg):
        self.registers.store(reg, self.stack.pop())

    def op_eq(self, a, b, c):
        b = self.value(b)
        c = self.value(c)
        self.registers.store(a, 1 if b == c else 0)

    def op_gt(self, a, b, c):
        b = self.value(b)
        c = self.value(c)
        self.registers.store(a, 1 if b > c else 0)

    def op_jmp(self, addr):
        addr = self.value(addr)
        self.ip = addr

    def op_jt(self, a, addr):
        a = self.value(a)
        addr = self.value(addr)
        if a:
            self.ip = addr

    def op_jf(self, a, addr):
        a = self.value(a)
        addr = self.value(addr)
        if a == 0:
            self.ip = addr

    def op_add(self, a, b, c):
        b = self.value(b)
        c = self.value(c)
        self.registers.store(a, (b + c) % MODULUS)

    def op_mult(self, a, b, c):
        b = self.value(b)
        c = self.value(c)
        self.registers.store(a, (b * c) % MODULUS)

    def op_mod(self, a, b, c):
        b = self.value(b)
        c = self.value(c)
        if c == 0:
            raise DivisionByZero("Mod of %s by zero" % b)
        self.registers.store(a, b % c)

    def op_and(self, a, b, c):
        b = self.value(b)
        c = self.value(c)
        self.registers.store(a, b & c)

    def op_or(self, a, b, c):
        b = self.value(b)
        c = self.value(c)
        self.registers.store(a, b | c)

    def op_not(self, a, b):
        b = self.value(b)
        self.registers.store(a, ~b & 0x7FFF)

    def op_rmem(self, a, b):
        b = self.value(b)
        self.registers.store(a, self.memory[b])

    def op_wmem(self, a, b):
        a = self.value(a)
        b = self.value(b)
        self.memory[a] = b

    def op_call(self, addr):
        addr = self.value(addr)
        self.stack.push(self.ip)
        self.ip = addr

    def op_ret(self):
        if not self.stack:
            self.diagnostic("Empty stack on RET. Halting.")
            return StopReason.EMPTY_RETURN
        self.ip = self.stack.pop()

    def op_out(self, char):
        char = chr(self.value(char) & 0xFF)
        self.output.write(char)
        self.output.flush()

    def op_in(self, reg):
        char = self.input.read(1)
        if not char:
            raise InputExhausted("End of input while waiting for a character")
        if not isinstance(char, bytes):
            raise InvalidInput("Input stream returned %r, expected bytes" % (char,))
        self.registers.store(reg, char[0])

    def op_noop(self):
        pass

    def op_invalid(self, opcode):
        self.diagnostic("Not handling: invalid opcode %s" % opcode)
        return StopReason.INVALID_OPCODE

def setup_logging(verbosity=0):
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity > 1:
        level = logging.DEBUG

    handler = RichHandler(console=Console(stderr=True), show_path=False)
    handler.setFormatter(logging.Formatter('%(message)s'))
    log.handlers[:] = [handler]
    log.setLevel(level)

def main(argv=None):
    parser = argparse.ArgumentParser(prog='synvm', description='Synacor challenge virtual machine')
    parser.add_argument('-v', '--verbose', action='count', default=0,
        help="Show verbose messages (repeat for debug output)")
    parser.add_argument('image', metavar='IMAGE', help="Program image to execute")
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    vm = VirtualMachine()
    try:
        code_size = vm.load(args.image)
    except OSError as e:
        log.error("Cannot read %s: %s", args.image, e)
        return 1
    except InvalidAddress as e:
        log.error("Cannot load %s: %s", args.image, e)
        return 1

    print("Read %s bytes, executing." % code_size)
    print("=========================")
    sys.stdout.flush()

    try:
        reason = vm.run()
    except KeyboardInterrupt:
        print("Exited")
        return 0

    return 1 if reason is StopReason.FAULT else 0

if __name__ == '__main__':
    sys.exit(main())
