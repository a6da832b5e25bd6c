"""blockvm extension: 2-D rigid-body physics for sprites.

Bodies live in a pymunk ``Space``: gravity, air damping, collisions between
bodies and against static boundary boxes. World coordinates have y pointing
down and angles in radians measured from "pointing right"; sprites use y up
and Scratch directions (90 = right), so every read and write goes through the
conversions below.

Block values keep the units of a 60 Hz stepper: velocities are pixels per
step, angular velocities radians per step, and gravity is scaled by
``GRAVITY_SCALE`` pixels per squared millisecond. pymunk works in seconds, so
the ``*_to_space`` helpers carry the factors.

Each ``tick`` first copies sprite poses into their bodies (scripts may have
moved them), steps the space by one frame, then copies the result back.
"""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pymunk

from cast import to_number
from extensions import ArgumentType, BlockType, ExtensionAPI, TargetType


BLOCKVM_EXTENSION_NAME = "jwPsychic"
BLOCKVM_EXTENSION_API_VERSION = 1

BASE_DELTA = 1000.0 / 60.0
STEPS_PER_SECOND = 1000.0 / BASE_DELTA
GRAVITY_SCALE = 0.001
FRICTION_AIR = 0.01
FRICTION = 0.1
DENSITY = 0.001
# Boundary boxes only need to outreach anything a project can scroll to.
WALL_LENGTH = 1.0e6
MIN_EXTENT = 1.0

# Sprite space has y up; the physics space has y down.
FLIP_Y = np.array([1.0, -1.0])


# ---- Space ----


def _new_space(gravity: np.ndarray) -> pymunk.Space:
    space = pymunk.Space()
    space.gravity = gravity_to_space(gravity)
    # Fraction of velocity kept after one second of air friction.
    space.damping = (1.0 - FRICTION_AIR) ** STEPS_PER_SECOND
    return space


def gravity_to_space(gravity: np.ndarray) -> Tuple[float, float]:
    accel = gravity * GRAVITY_SCALE * 1000.0 * 1000.0
    return float(accel[0]), float(accel[1])


def _dynamic_body(option: str, width: float, height: float) -> Tuple[pymunk.Body, pymunk.Shape]:
    body = pymunk.Body()
    width = max(width, MIN_EXTENT)
    height = max(height, MIN_EXTENT)
    if option == "circle":
        shape = pymunk.Circle(body, max(width, height) / 2)
    else:
        shape = pymunk.Poly.create_box(body, (width, height))
    shape.density = DENSITY
    shape.friction = FRICTION
    return body, shape


def _wall(x: float, y: float, width: float, height: float) -> Tuple[pymunk.Body, pymunk.Shape]:
    body = pymunk.Body(body_type=pymunk.Body.STATIC)
    body.position = (x, y)
    shape = pymunk.Poly.create_box(body, (width, height))
    shape.friction = FRICTION
    return body, shape


def _remove_body(space: pymunk.Space, body: pymunk.Body) -> None:
    space.remove(body, *body.shapes)


# ---- Extension state ----


class _PsychicState:
    __slots__ = ("space", "gravity", "bodies", "bounds")

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.gravity = np.array([0.0, 1.0])
        self.space = _new_space(self.gravity)
        self.bodies: Dict[str, pymunk.Body] = {}
        self.bounds: Optional[List[pymunk.Body]] = None


def _get_state(runtime: Any) -> _PsychicState:
    state = getattr(runtime, "_psychic_ext_state", None)
    if state is None:
        state = _PsychicState()
        setattr(runtime, "_psychic_ext_state", state)
    return state


def _vector_cls(util: Any) -> type:
    return util.runtime.services.type_registry.get("Vector").cls


def vector_to_matter(vector: Any) -> np.ndarray:
    return vector.as_array() * FLIP_Y


def matter_to_vector(cls: type, arr: Any) -> Any:
    return cls.from_array(np.asarray(arr, dtype=float) * FLIP_Y)


def angle_to_matter(angle: float) -> float:
    return (angle - 90) * math.pi / 180


def matter_to_angle(matter: float) -> float:
    return (matter * 180 / math.pi) + 90


def _correct_body(state: _PsychicState, runtime: Any, target_id: str) -> None:
    body = state.bodies[target_id]
    target = runtime.get_target_by_id(target_id)
    if target is None:
        _remove_body(state.space, body)
        del state.bodies[target_id]
        return
    body.position = (target.x, -target.y)
    body.angle = angle_to_matter(target.direction)


def _correct_target(state: _PsychicState, runtime: Any, target_id: str) -> None:
    body = state.bodies[target_id]
    target = runtime.get_target_by_id(target_id)
    x, y = body.position
    target.set_xy(x, -y)
    target.set_direction(matter_to_angle(body.angle))


# ---- Blocks ----


def _tick(args, util) -> None:
    runtime = util.runtime
    state = _get_state(runtime)
    fps = runtime.framerate or 60
    for target_id in list(state.bodies):
        _correct_body(state, runtime, target_id)
    state.space.step(1.0 / fps)
    for target_id in list(state.bodies):
        _correct_target(state, runtime, target_id)


def _boundaries(args, util) -> None:
    runtime = util.runtime
    state = _get_state(runtime)
    if state.bounds is not None:
        for wall in state.bounds:
            _remove_body(state.space, wall)
        state.bounds = None

    width = runtime.stage_width
    height = runtime.stage_height
    walls: List[Tuple[pymunk.Body, pymunk.Shape]] = []
    option = str(args.get("OPTION", ""))
    if option == "all":
        walls.extend([
            _wall(-width, 0, width, WALL_LENGTH),
            _wall(width, 0, width, WALL_LENGTH),
            _wall(0, -height, WALL_LENGTH, height),
        ])
    if option in ("all", "floor"):
        walls.append(_wall(0, height, WALL_LENGTH, height))

    for body, shape in walls:
        state.space.add(body, shape)
    state.bounds = [body for body, _shape in walls]


def _set_gravity(args, util) -> None:
    state = _get_state(util.runtime)
    state.gravity = vector_to_matter(_vector_cls(util).to_vector(args.get("VECTOR")))
    state.space.gravity = gravity_to_space(state.gravity)


def _get_gravity(args, util) -> Any:
    return matter_to_vector(_vector_cls(util), _get_state(util.runtime).gravity)


def _enable_physics(args, util) -> None:
    from runtime import VMRuntimeError

    target = util.target
    state = _get_state(util.runtime)
    costumes = target.get_costumes()
    costume_size = costumes[target.current_costume].size if costumes else (0.0, 0.0)
    size_x = costume_size[0] * (target.size / 100) * (target.stretch[0] / 100)
    size_y = costume_size[1] * (target.size / 100) * (target.stretch[1] / 100)

    option = str(args.get("OPTION", ""))
    if option == "precise":
        raise VMRuntimeError("Precise physics shapes are not supported yet", opcode="jwPsychic_enablePhysics", rule="EXT")
    if option not in ("box", "circle"):
        raise VMRuntimeError(f"Invalid physics option '{option}'", opcode="jwPsychic_enablePhysics", rule="EXT")
    body, shape = _dynamic_body(option, size_x, size_y)

    previous = state.bodies.get(target.id)
    if previous is not None:
        _remove_body(state.space, previous)
    state.bodies[target.id] = body
    state.space.add(body, shape)
    _correct_body(state, util.runtime, target.id)


def _disable_physics(args, util) -> None:
    state = _get_state(util.runtime)
    body = state.bodies.pop(util.target.id, None)
    if body is not None:
        _remove_body(state.space, body)


def _set_pos(args, util) -> None:
    v = _vector_cls(util).to_vector(args.get("VECTOR"))
    util.target.set_xy(v.x, v.y)


def _get_pos(args, util) -> Any:
    cls = _vector_cls(util)
    body = _get_state(util.runtime).bodies.get(util.target.id)
    if body is None:
        return cls(util.target.x, util.target.y)
    return matter_to_vector(cls, body.position)


def _set_rot(args, util) -> None:
    util.target.set_direction(to_number(args.get("ANGLE")))


def _get_rot(args, util) -> float:
    body = _get_state(util.runtime).bodies.get(util.target.id)
    if body is None:
        return util.target.direction
    return matter_to_angle(body.angle)


def _set_vel(args, util) -> None:
    body = _get_state(util.runtime).bodies.get(util.target.id)
    if body is None:
        return
    per_step = vector_to_matter(_vector_cls(util).to_vector(args.get("VECTOR")))
    body.velocity = tuple(per_step * STEPS_PER_SECOND)


def _get_vel(args, util) -> Any:
    cls = _vector_cls(util)
    body = _get_state(util.runtime).bodies.get(util.target.id)
    if body is None:
        return cls(0, 0)
    return matter_to_vector(cls, np.asarray(body.velocity, dtype=float) / STEPS_PER_SECOND)


def _set_ang_vel(args, util) -> None:
    body = _get_state(util.runtime).bodies.get(util.target.id)
    if body is None:
        return
    body.angular_velocity = float(to_number(args.get("ANGLE"))) * STEPS_PER_SECOND


def _get_ang_vel(args, util) -> float:
    body = _get_state(util.runtime).bodies.get(util.target.id)
    if body is None:
        return 0
    return body.angular_velocity / STEPS_PER_SECOND


def _reset(runtime: Any) -> None:
    _get_state(runtime).reset()


def blockvm_register(ext: ExtensionAPI) -> None:
    ext.require("jwVector")
    vector = ext.get_type("Vector")
    sprite_only = (TargetType.SPRITE,)

    ext.metadata(name="Psychic", version="0.1.0")
    ext.register_block("tick", _tick, text="tick")
    ext.separator()
    ext.register_block(
        "boundaries",
        _boundaries,
        text="set boundaries [OPTION]",
        arguments={"OPTION": {"type": ArgumentType.STRING, "menu": "boundariesOption"}},
    )
    ext.register_block("setGravity", _set_gravity, text="set gravity to [VECTOR]", arguments={"VECTOR": vector.argument})
    ext.register_block("getGravity", _get_gravity, text="gravity", **vector.block)
    ext.separator()
    ext.register_block(
        "enablePhysics",
        _enable_physics,
        text="enable physics as [OPTION]",
        arguments={"OPTION": {"type": ArgumentType.STRING, "menu": "enablePhysicsOption"}},
        filter=sprite_only,
    )
    ext.register_block("disablePhysics", _disable_physics, text="disable physics", filter=sprite_only)
    ext.separator()
    ext.register_block("setPos", _set_pos, text="set position to [VECTOR]", arguments={"VECTOR": vector.argument}, filter=sprite_only)
    ext.register_block("getPos", _get_pos, text="position", filter=sprite_only, **vector.block)
    ext.register_block("setVel", _set_vel, text="set velocity to [VECTOR]", arguments={"VECTOR": vector.argument}, filter=sprite_only)
    ext.register_block("getVel", _get_vel, text="velocity", filter=sprite_only, **vector.block)
    ext.register_block(
        "setRot",
        _set_rot,
        text="set rotation to [ANGLE]",
        arguments={"ANGLE": {"type": ArgumentType.ANGLE, "default_value": 90}},
        filter=sprite_only,
    )
    ext.register_block("getRot", _get_rot, text="rotation", block_type=BlockType.REPORTER, filter=sprite_only)
    ext.register_block(
        "setAngVel",
        _set_ang_vel,
        text="set angular velocity to [ANGLE]",
        arguments={"ANGLE": {"type": ArgumentType.ANGLE, "default_value": 0}},
        filter=sprite_only,
    )
    ext.register_block("getAngVel", _get_ang_vel, text="angular velocity", block_type=BlockType.REPORTER, filter=sprite_only)
    ext.register_menu("enablePhysicsOption", ["precise", "box", "circle"])
    ext.register_menu("boundariesOption", ["all", "floor", "none"])

    ext.on_event("PROJECT_START", _reset)
