# framehop

Stack frame unwinding building blocks for the aarch64 architecture.

Given the registers of a stopped thread (`lr`, `sp`, `fp`) and a way to
read 64-bit words from its stack, framehop computes the caller's register
values and return address, one frame at a time. Unwind rules can be
derived from DWARF CFI rules, from Mach-O compact unwind opcodes, or from
analysing the machine code around the instruction pointer to detect
function prologues and epilogues.

## Installation

```
pip install .
```

## Unwinding with a frame pointer

```python
from framehop.aarch64.unwind_rule import NoOp, UseFramePointer
from framehop.aarch64.unwindregs import UnwindRegsAarch64

stack = [1, 2, 3, 4, 0x40, 0x100200, 5, 6, 0x70, 0x100100, 7, 8, 9, 10, 0, 0]

def read_stack(addr):
    return stack[addr // 8]

regs = UnwindRegsAarch64(lr=0x100300, sp=0x10, fp=0x20)
NoOp().exec(True, regs, read_stack)              # 0x100300
UseFramePointer().exec(False, regs, read_stack)  # 0x100200; regs.sp == 0x30, regs.fp == 0x40
UseFramePointer().exec(False, regs, read_stack)  # 0x100100
UseFramePointer().exec(False, regs, read_stack)  # None: the stack ends here
```

`exec` updates `regs` in place and returns the return address, or `None`
when the stack ends. It raises a subclass of `UnwindError`
(`DidNotAdvance`, `IntegerOverflow`, `CouldNotReadStack`,
`FramepointerUnwindingMovedBackwards`) when unwinding fails. A
`read_stack` callable should raise an exception when the address cannot
be read; that exception becomes the cause of `CouldNotReadStack`.

The rules in `framehop.aarch64.unwind_rule` are `NoOp`,
`NoOpIfFirstFrameOtherwiseFp`, `OffsetSp`,
`OffsetSpIfFirstFrameOtherwiseStackEndsHere`, `OffsetSpAndRestoreLr`,
`OffsetSpAndRestoreFpAndLr`, `UseFramePointer` and
`UseFramepointerWithOffsets`. `rule_for_stub_functions()`,
`rule_for_function_start()` and `fallback_rule()` return the defaults for
those situations.

## Prologue and epilogue detection

```python
from framehop.aarch64.instruction_analysis import rule_from_instruction_analysis

rule = rule_from_instruction_analysis(function_bytes, pc_offset)
```

The result is an unwind rule when `pc_offset` lies inside a prologue or
epilogue, and `None` when the code there looks like a function body.
Prologue analysis is tried first. The two analyses are also available on
their own:

- `rule_from_prologue_analysis(text_bytes, pc_offset)` and
  `rule_from_epilogue_analysis(text_bytes, pc_offset)` in
  `framehop.aarch64.instruction_analysis`;
- `framehop.aarch64.prologue.unwind_rule_from_detected_prologue(slice_from_start, slice_to_end)`,
  which takes the bytes before and from the pc;
- `framehop.aarch64.epilogue.unwind_rule_from_detected_epilogue(function_bytes, pc_offset)`.

## Other pieces

- `framehop.code_address.FrameAddress`: an instruction pointer or return
  address. `FrameAddress.from_return_address(0)` returns `None`;
  `address_for_lookup()` subtracts one byte from return addresses.
- `framehop.aarch64.unwindregs.PtrAuthMask`: strips pointer
  authentication bits from return addresses (`new_no_strip`,
  `new_24_40`, `from_max_known_address`). Pass one to
  `UnwindRegsAarch64.with_ptr_auth_mask` to have every `lr` value masked.
- `framehop.aarch64.dwarf.translate_into_unwind_rule(cfa_rule, fp_rule, lr_rule)`:
  turns an already decoded CFA rule (`CfaRegisterAndOffset`,
  `CfaExpression`) and fp / lr register rules (`RuleUndefined`,
  `RuleSameValue`, `RuleOffset`, `RuleOther`) into a cacheable unwind
  rule, raising `ConversionError` when none fits.
- `framehop.aarch64.macho.unwind_frame(opcode, is_first_frame, offset, function_bytes)`
  and `rule_for_stub_helper(offset)`: decide how to unwind from an already
  decoded compact unwind opcode (`OpcodeNull`, `OpcodeFrameless`,
  `OpcodeDwarf`, `OpcodeFrameBased`, `OpcodeUnrecognized`), returning
  `ExecRule` or `NeedDwarf`, or raising a `CompactUnwindInfoError`.
- `framehop.add_signed`: `checked_add_signed` and `wrapping_add_signed`
  add a signed value to an unsigned fixed-width integer.

## What the package does not do

framehop provides the per-frame rules and analyses only. It does not read
object files, does not parse `__unwind_info`, `__eh_frame`,
`.eh_frame_hdr` or `.debug_frame` sections, does not evaluate DWARF
expressions, keeps no registry of loaded modules and no rule cache, and
has no unwinder that walks a whole stack from an instruction pointer.
Only aarch64 is covered. There is no command-line tool.

## Running the tests

```
pip install .[test]
pytest
```