# CHIP-8 INFO
# https://chip-8.github.io/extensions/#chip-8
# https://chip-8.github.io/links/
#
# MASTERING CHIP-8
# https://github.com/mattmikolay/chip-8/wiki/Mastering-CHIP%E2%80%908
#
# Only a subset of the instruction set is emulated: CLS, RET, JP, CALL,
# LD Vx byte, ADD Vx byte, LD I addr and DRW. Every other opcode is fetched
# and skipped.


import argparse
import sys
from dataclasses import dataclass
from enum import Enum
from functools import wraps

import os
os.environ["PYGAME_HIDE_SUPPORT_PROMPT"] = "no welcome message"   # this env var disable pygame's welcome message when imported
import pygame
from pygame.locals import (
    K_0, K_1, K_2, K_3,
    K_4, K_5, K_6, K_7,
    K_8, K_9, K_a, K_b,
    K_c, K_d, K_e, K_f,
)


# ******************** STATIC SECTION
C8_FONTS = [0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
            0x20, 0x60, 0x20, 0x20, 0x70,  # 1
            0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
            0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
            0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
            0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
            0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
            0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
            0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
            0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
            0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
            0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
            0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
            0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
            0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
            0xF0, 0x80, 0xF0, 0x80, 0x80]  # F

KEY_MAPPINGS = {
    K_0: 0x0,
    K_1: 0x1,
    K_2: 0x2,
    K_3: 0x3,
    K_4: 0x4,
    K_5: 0x5,
    K_6: 0x6,
    K_7: 0x7,
    K_8: 0x8,
    K_9: 0x9,
    K_a: 0xA,
    K_b: 0xB,
    K_c: 0xC,
    K_d: 0xD,
    K_e: 0xE,
    K_f: 0xF,
}

MEMORY_SIZE = 4096
ROM_START_ADDRESS = 0x200
MAX_ROM_SIZE = MEMORY_SIZE - ROM_START_ADDRESS
STACK_SIZE = 12
REGISTERS_COUNT = 16
FLAG_REGISTER = 0xF
SPRITE_WIDTH = 8
DEBUG = True if int(os.getenv('DEBUG', 0)) >= 1 else False
SCREEN_HEIGHT = 32
SCREEN_WIDTH = 64
SCALE = 20
CYCLES_PER_SECOND = 60
WHITE = pygame.Color(255, 255, 255, 255)
BLACK = pygame.Color(0, 0, 0, 255)


# ******************** ERRORS SECTION
class Chip8Error(Exception):
    """base class for every fault the machine can report to its embedder"""

class RomTooLargeError(Chip8Error, ValueError):
    pass

class StackOverflowError(Chip8Error, IndexError):
    pass

class StackUnderflowError(Chip8Error, IndexError):
    pass

class MemoryAccessError(Chip8Error, IndexError):
    pass


# ******************** UTILITIES SECTION
def asm(msg):
    """decorator to print out the ASM of the instruction being called"""
    def decorator(fn):
        @wraps(fn)
        def wrapper_fn(*args, **kwargs):
            mem_addr = args[0].pc - 2   # the fetch step has already moved PC past the instruction
            vals = fn(*args, **kwargs)  # use the locals() values of each decorated function in the print
            vals['mem_addr'] = mem_addr
            if DEBUG: print(msg.format(**vals))
        return wrapper_fn
    return decorator

def parse_color(value):
    """turn an RRGGBBAA hex string (with or without a leading '#') into a pygame color"""
    try:
        return pygame.Color(int(value.lstrip('#'), 16))
    except (ValueError, OverflowError) as e:
        raise argparse.ArgumentTypeError(f"{value!r} is not an RRGGBBAA hex color") from e

def get_args(argv=None):
    parser = argparse.ArgumentParser(description="CHIP-8 interpreter")
    parser.add_argument("-f", "--file", required=True, help="input rom file")
    parser.add_argument("-s", "--scale", type=int, default=SCALE, help="size in window pixels of one CHIP-8 pixel")
    parser.add_argument("--fg", type=parse_color, default=WHITE, help="foreground color as RRGGBBAA hex")
    parser.add_argument("--bg", type=parse_color, default=BLACK, help="background color as RRGGBBAA hex")
    parser.add_argument("--no-outlines", dest="outlines", action="store_false", help="don't outline lit pixels")
    parser.add_argument("--hz", type=int, default=CYCLES_PER_SECOND, help="instructions emulated per second")
    return parser.parse_args(argv)


# ******************** I/O SECTION
class Screen:
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT, s=SCALE, bg_color=BLACK, fg_color=WHITE, outlines=True):
        self.w, self.h, self.scale = w, h, s
        self.background = bg_color
        self.foreground = fg_color
        self.outlines = outlines
        self.surface = pygame.display.set_mode(
            (w * self.scale, h * self.scale),
        )
        self.surface.fill(self.background)

    def render(self, display):
        """
        draw one filled square per display cell, outlined when the pixel is lit and outlines are enabled
        the display is only read, never changed
        """
        for y, row in enumerate(display.rows()):
            for x, on in enumerate(row):
                rect = (x * self.scale, y * self.scale, self.scale, self.scale)
                pygame.draw.rect(self.surface, self.foreground if on else self.background, rect)
                if on and self.outlines:
                    pygame.draw.rect(self.surface, self.background, rect, 1)
        self.refresh()

    @staticmethod
    def refresh():
        pygame.display.flip()

class Keypad:
    """state of the 16 hex keys, True while held down"""
    def __init__(self):
        self.keys = [False] * 16

    def __getitem__(self, key):
        return self.keys[key]

    def __setitem__(self, key, value):
        self.keys[key] = bool(value)

def toggle_pause(state):
    if state == RunState.RUNNING:
        return RunState.PAUSED
    if state == RunState.PAUSED:
        return RunState.RUNNING
    return state

def handle_input(chip):
    """drain the pygame event queue and update the machine run state and keypad"""
    for event in pygame.event.get():
        if event.type == pygame.QUIT:
            chip.state = RunState.QUIT
            return
        if event.type == pygame.KEYDOWN:
            if event.key == pygame.K_ESCAPE:
                chip.state = RunState.QUIT
                return
            elif event.key == pygame.K_SPACE:
                chip.state = toggle_pause(chip.state)
                print("------- PAUSED -------" if chip.state == RunState.PAUSED else "------- RESUMED -------")
                return
            elif event.key in KEY_MAPPINGS:
                chip.keypad[KEY_MAPPINGS[event.key]] = True     # register keypress
        elif event.type == pygame.KEYUP:
            if event.key in KEY_MAPPINGS:
                chip.keypad[KEY_MAPPINGS[event.key]] = False


# ******************** MEMORY SECTION
# ********** WRAPS A LIST TO REPRESENT A STACK WITH A LIMITED SIZE OF 12 ADDRESSES
class Stack:
    def __init__(self, capacity=STACK_SIZE):
        self.addr_list = []
        self.capacity = capacity

    def __len__(self):
        return len(self.addr_list)

    def __repr__(self):
        return f"Stack({[hex(a) for a in self.addr_list]})"

    def append(self, address):
        if len(self.addr_list) >= self.capacity:
            raise StackOverflowError(f"The CHIP-8 stack can contain at most {self.capacity} addresses. Limit exceeded")
        self.addr_list.append(address)

    def pop(self):
        if not self.addr_list:
            raise StackUnderflowError("Return with an empty CHIP-8 stack")
        return self.addr_list.pop()

# ********** WRAPS A LIST TO REPRESENT THE MAIN MEMORY WITH A LIMITED SIZE OF 4KB
class Memory:
    def __init__(self):
        self.inner = [0] * MEMORY_SIZE
        self.inner[0x00:0x00+len(C8_FONTS)] = C8_FONTS

    @staticmethod
    def _check(address):
        if not 0 <= address < MEMORY_SIZE:
            raise MemoryAccessError(f"Address 0x{address:04x} is outside the 4KB memory")

    def __setitem__(self, key, value):
        self._check(key)
        self.inner[key] = value & 0xFF

    def __getitem__(self, index):
        self._check(index)
        return self.inner[index]

    def load_rom(self, rom):
        """copy the program image at the ROM start address, refusing images that don't fit"""
        if len(rom) > MAX_ROM_SIZE:
            raise RomTooLargeError(f"ROM is too big. Rom size: {len(rom)}; Max size allowed: {MAX_ROM_SIZE}")
        self.inner[ROM_START_ADDRESS:ROM_START_ADDRESS+len(rom)] = list(rom)

# ********** ROW-MAJOR GRID OF MONOCHROME PIXELS, READ BY THE SCREEN ONCE PER FRAME
class Display:
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT):
        self.w, self.h = w, h
        self.buffer = [False] * w * h

    def _offset(self, x, y):
        if not (0 <= x < self.w and 0 <= y < self.h):
            raise IndexError(f"Pixel ({x}, {y}) is outside the {self.w}x{self.h} display")
        return y * self.w + x

    def read_pixel(self, x, y):
        """return True if pixel is ON, False if pixel is OFF"""
        return self.buffer[self._offset(x, y)]

    def write_pixel(self, x, y, on):
        self.buffer[self._offset(x, y)] = bool(on)

    def clear(self):
        self.buffer = [False] * self.w * self.h

    def rows(self):
        for y in range(self.h):
            yield tuple(self.buffer[y * self.w:(y + 1) * self.w])


# ******************** CPU SECTION
class RunState(Enum):
    RUNNING = "running"
    PAUSED = "paused"
    QUIT = "quit"

@dataclass(frozen=True)
class Instruction:
    """fields of a 16-bit opcode, valid for the cycle that fetched it"""
    opcode: int
    family: int     # bits 12-15, picks the instruction group
    nnn: int        # 12-bit address
    nn: int         # 8-bit immediate
    n: int          # 4-bit nibble, sprite height for DRW
    x: int          # register index in bits 8-11
    y: int          # register index in bits 4-7

def decode(opcode):
    """split the opcode in its fields, every 16-bit value is a valid input"""
    return Instruction(
        opcode=opcode,
        family=(opcode >> 12) & 0xF,
        nnn=opcode & 0x0FFF,
        nn=opcode & 0x00FF,
        n=opcode & 0x000F,
        x=(opcode >> 8) & 0xF,
        y=(opcode >> 4) & 0xF,
    )

def fetch(mem, pc):
    """each instruction is two bytes long, stored big-endian"""
    return mem[pc] << 8 | mem[pc + 1]

class Chip8:
    def __init__(self, rom=b"", rom_name=None):
        self.mem = Memory()
        self.mem.load_rom(rom)      # raises before the machine is usable if the image doesn't fit
        self.rom_name = rom_name
        self.stack = Stack()
        self.display = Display()
        self.keypad = Keypad()
        self.v_regs = [0] * REGISTERS_COUNT
        self.pc = ROM_START_ADDRESS
        self.idx = 0    # specify where the sprites reside in memory
        self.dt = 0     # delay timer, never decremented
        self.st = 0     # sound timer, never decremented
        self.state = RunState.RUNNING
        # opcodes 0x0NNN are told apart by their low byte alone
        self.sys_instructions = {
            0xE0: self._clear_screen,
            0xEE: self._return,
        }
        self.instructions = {
            0x1: self._jump,
            0x2: self._call_addr,
            0x6: self._set_vk,
            0x7: self._add_to_vk,
            0xA: self._set_idx,
            0xD: self._to_screen,
        }

    def __str__(self):
        registers = f"PC_REGISTER:0x{self.pc:04x} | IDX_REGISTER:0x{self.idx:04x} | VARIABLE_REGISTERS:{self.v_regs}"
        stack = f"STACK:{self.stack}"
        state = f"STATE: {self.state.name}"
        if self.rom_name:
            state += f" | ROM: {self.rom_name}"
        return f"{registers}\n{stack}\n{state}"

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: CLS")
    def _clear_screen(self, inst):
        self.display.clear()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: RET")
    def _return(self, inst):
        """return from a subroutine"""
        self.pc = self.stack.pop()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: JP 0x{address:04x}")
    def _jump(self, inst):
        address = inst.nnn
        self.pc = address
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: CALL 0x{address:04x}")
    def _call_addr(self, inst):
        address = inst.nnn
        self.stack.append(self.pc)
        self.pc = address
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x:X}, {value}")
    def _set_vk(self, inst):
        """set the value of one of the 16 variable registers, Vx"""
        x, value = inst.x, inst.nn
        self.v_regs[x] = value
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD V{x:X}, {value}")
    def _add_to_vk(self, inst):
        """add to the value already present in one of the variable registers, VF is left alone"""
        x, value = inst.x, inst.nn
        self.v_regs[x] = (self.v_regs[x] + value) & 0xFF    # keep only the lowest 8 bits from the result and store them in Vx
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD I, 0x{value:04x}")
    def _set_idx(self, inst):
        """set the value of the I register"""
        value = inst.nnn
        self.idx = value
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: DRW V{x:X}, V{y:X}, {n_bytes}")
    def _to_screen(self, inst):
        """display n-byte sprite starting at memory location I at (Vx, Vy), set VF = collision"""
        x, y = inst.x, inst.y
        # only the starting point wraps, the sprite itself is clipped at the edges
        x_start = self.v_regs[x] % self.display.w
        y_start = self.v_regs[y] % self.display.h
        n_bytes = inst.n
        self.v_regs[FLAG_REGISTER] = 0
        # step through each sprite byte
        for i in range(n_bytes):
            y_coordinate = y_start + i
            if y_coordinate >= self.display.h:
                break
            sprite_byte = self.mem[(self.idx + i) & 0xFFF]     # I addresses 12 bits, reads wrap at the end of memory
            # step through each byte's bits, MSB is the leftmost pixel
            for j in range(SPRITE_WIDTH):
                x_coordinate = x_start + j
                if x_coordinate >= self.display.w:
                    break
                bit = (sprite_byte >> (7 - j)) & 1
                pixel_state = self.display.read_pixel(x_coordinate, y_coordinate)
                # sprites are XORed onto the existing screen and if this
                # causes any pixel to be erased then VF=1, otherwise VF=0
                if pixel_state and bit:
                    self.v_regs[FLAG_REGISTER] = 1
                self.display.write_pixel(x_coordinate, y_coordinate, pixel_state ^ bit)
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: UNIMPLEMENTED 0x{opcode:04x}")
    def _no_op(self, inst):
        """opcodes outside the emulated subset are skipped, PC has already moved on"""
        opcode = inst.opcode
        return locals()

    def _goto_next_instruction(self):
        self.pc += 0x2

    def dispatch(self, inst):
        """return the method implementing the instruction, the no-op for anything unknown"""
        if inst.family == 0x0:
            return self.sys_instructions.get(inst.nn, self._no_op)
        return self.instructions.get(inst.family, self._no_op)

    def execute(self, inst):
        self.dispatch(inst)(inst)

    def cycle(self):
        """emulate one machine cycle (fetch opcode, decode opcode, execute opcode)"""
        opcode = fetch(self.mem, self.pc)
        self._goto_next_instruction()
        inst = decode(opcode)
        self.execute(inst)
        return inst


# ******************** ENTRY POINT SECTION
def read_rom(path):
    with open(path, mode='rb') as f:
        return f.read()

def run(chip, screen, hz=CYCLES_PER_SECOND):
    clock = pygame.time.Clock()
    while chip.state != RunState.QUIT:
        handle_input(chip)
        if chip.state == RunState.PAUSED:
            clock.tick(hz)      # keep the window responsive without emulating
            continue
        if chip.state == RunState.QUIT:
            break
        chip.cycle()
        clock.tick(hz)
        screen.render(chip.display)

def main(argv=None):
    args = get_args(argv)
    try:
        rom = read_rom(args.file)
    except OSError as e:
        sys.exit(f"Rom file {args.file} is corrupted or does not exist: {e}")
    try:
        chip = Chip8(rom, rom_name=args.file)
    except RomTooLargeError as e:
        sys.exit(f"Rom file {args.file} can't be loaded. {e}")
    if DEBUG: print(f"The ROM at path {args.file} has been loaded successfully")
    # pygame initialization
    pygame.init()
    try:
        pygame.display.set_caption(os.path.basename(args.file))
        screen = Screen(s=args.scale, bg_color=args.bg, fg_color=args.fg, outlines=args.outlines)
        try:
            run(chip, screen, args.hz)
        except Chip8Error as e:
            sys.exit(f"********** THE EMULATOR CRASHED WITH THE FOLLOWING STATE\n{e}\n{chip}")
    finally:
        pygame.quit()


if __name__ == "__main__":
    main()
