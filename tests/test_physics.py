import pytest

from helpers import document, sprite
from project import parse_project
from runtime import BlockUtility, Runtime, RuntimeConfig, Thread, VMRuntimeError


class World:
    """A runtime with the bundled extensions and a 50x50 sprite, driven block by block."""

    def __init__(self, services, *, y=0.0, framerate=30):
        doc = document(sprite({}, name="Ball", y=y, costumes=[{"name": "c", "size": [50, 50]}]))
        self.runtime = Runtime(parse_project(doc), config=RuntimeConfig(framerate=framerate), services=services)
        self.ball = self.runtime.get_target_by_id("Ball")
        self.util = BlockUtility(self.runtime.sequencer, Thread(None, self.ball))

    def run(self, opcode, **args):
        return self.runtime.get_opcode_function(f"jwPsychic_{opcode}")(args, self.util)

    @property
    def vector(self):
        return self.runtime.services.type_registry.get("Vector").cls


@pytest.fixture
def world(bundled_services):
    return World(bundled_services)


def test_default_gravity_points_down(world):
    assert world.run("getGravity") == world.vector(0, -1)


def test_gravity_pulls_enabled_sprite_down(world):
    world.run("enablePhysics", OPTION="box")
    world.run("tick")
    assert world.ball.y < 0
    assert world.ball.x == pytest.approx(0)
    assert world.run("getVel").y < 0


def test_sprites_without_bodies_stay_put(world):
    world.run("tick")
    assert (world.ball.x, world.ball.y) == (0.0, 0.0)
    assert world.run("getVel") == world.vector(0, 0)
    assert world.run("getAngVel") == 0


def test_floor_stops_falling_sprite(bundled_services):
    w = World(bundled_services, y=-170)
    w.run("boundaries", OPTION="floor")
    w.run("enablePhysics", OPTION="box")
    for _ in range(60):
        w.run("tick")
    # Bottom edge rests on the stage floor at y = -180.
    assert w.ball.y == pytest.approx(-155, abs=1)


def test_no_boundaries_lets_sprite_fall(bundled_services):
    w = World(bundled_services, y=-170)
    w.run("boundaries", OPTION="floor")
    w.run("boundaries", OPTION="none")
    w.run("enablePhysics", OPTION="circle")
    for _ in range(30):
        w.run("tick")
    assert w.ball.y < -200


def test_set_gravity_round_trips(world):
    world.run("setGravity", VECTOR="2,3")
    assert world.run("getGravity") == world.vector(2, 3)


def test_velocity_and_rotation_controls(world):
    world.run("enablePhysics", OPTION="box")
    world.run("setGravity", VECTOR=world.vector(0, 0))
    world.run("setVel", VECTOR="10,0")
    world.run("setAngVel", ANGLE=0)
    world.run("tick")
    assert world.ball.x > 0
    assert world.ball.direction == pytest.approx(90)
    world.run("setRot", ANGLE=45)
    # The body picks up the sprite's new direction on the next tick.
    assert world.run("getRot") == pytest.approx(90)
    world.run("setVel", VECTOR="0,0")
    world.run("tick")
    assert world.run("getRot") == pytest.approx(45)
    assert world.ball.direction == pytest.approx(45)


def test_set_pos_moves_sprite_and_body_follows(world):
    world.run("enablePhysics", OPTION="box")
    world.run("setGravity", VECTOR="0,0")
    world.run("setPos", VECTOR="40,-20")
    world.run("tick")
    pos = world.run("getPos")
    assert (pos.x, pos.y) == (pytest.approx(40), pytest.approx(-20))


def test_invalid_shapes_raise(world):
    with pytest.raises(VMRuntimeError):
        world.run("enablePhysics", OPTION="precise")
    with pytest.raises(VMRuntimeError):
        world.run("enablePhysics", OPTION="blob")


def test_disabled_sprite_stops_moving(world):
    world.run("enablePhysics", OPTION="box")
    world.run("disablePhysics")
    world.run("tick")
    assert world.ball.y == 0


def test_removed_sprite_drops_its_body(world):
    world.run("enablePhysics", OPTION="box")
    world.runtime.project.targets.remove(world.ball)
    world.run("tick")
    assert world.run("getVel") == world.vector(0, 0)


def test_green_flag_resets_world(world):
    world.run("enablePhysics", OPTION="box")
    world.run("setGravity", VECTOR="5,5")
    world.runtime.green_flag()
    assert world.run("getGravity") == world.vector(0, -1)
    world.run("tick")
    assert world.ball.y == 0


def test_angular_velocity_keeps_per_step_units(world):
    world.run("enablePhysics", OPTION="circle")
    world.run("setGravity", VECTOR="0,0")
    world.run("setAngVel", ANGLE=0.25)
    assert world.run("getAngVel") == pytest.approx(0.25)
    world.run("setVel", VECTOR="3,-4")
    vel = world.run("getVel")
    assert (vel.x, vel.y) == (pytest.approx(3), pytest.approx(-4))


def test_boxes_stack_without_overlapping(bundled_services):
    costumes = [{"name": "c", "size": [50, 50]}]
    doc = document(
        sprite({}, name="Top", y=-60, costumes=costumes),
        sprite({}, name="Bottom", y=-130, costumes=costumes),
    )
    runtime = Runtime(parse_project(doc), config=RuntimeConfig(framerate=30), services=bundled_services)
    top = runtime.get_target_by_id("Top")
    bottom = runtime.get_target_by_id("Bottom")
    top_util = BlockUtility(runtime.sequencer, Thread(None, top))
    bottom_util = BlockUtility(runtime.sequencer, Thread(None, bottom))

    def run(opcode, util, **args):
        return runtime.get_opcode_function(f"jwPsychic_{opcode}")(args, util)

    run("boundaries", bottom_util, OPTION="floor")
    run("enablePhysics", top_util, OPTION="box")
    run("enablePhysics", bottom_util, OPTION="box")
    for _ in range(90):
        run("tick", bottom_util)

    assert bottom.y == pytest.approx(-155, abs=1)
    assert top.y == pytest.approx(-105, abs=1.5)
    # Both are 50 tall; centres closer than that would mean the boxes interpenetrate.
    assert top.y - bottom.y >= 49.5
    assert top.x == pytest.approx(0, abs=0.5)
