import math
import xml.etree.ElementTree as ET

import numpy as np
import pytest

from modelview import DecodeError, ErrorKind, RawAsset, RemediationHint, decode_sync
from modelview.loaders.dae_loader import node_transform

DAE_TEMPLATE = """<?xml version="1.0" encoding="utf-8"?>
<COLLADA xmlns="http://www.collada.org/2005/11/COLLADASchema" version="1.4.1">
  <asset><up_axis>{up_axis}</up_axis></asset>
  <library_effects>
    <effect id="Red-effect">
      <profile_COMMON>
        <technique sid="common">
          <phong>
            <diffuse><color>1 0 0 1</color></diffuse>
            <transparency><float>0.5</float></transparency>
          </phong>
        </technique>
      </profile_COMMON>
    </effect>
  </library_effects>
  <library_materials>
    <material id="Red-material" name="Red">
      <instance_effect url="#Red-effect"/>
    </material>
  </library_materials>
  <library_geometries>
    <geometry id="tri-mesh" name="Tri">
      <mesh>
        <source id="tri-positions">
          <float_array id="tri-positions-array" count="12">0 0 0 1 0 0 0 0 2 1 0 2</float_array>
          <technique_common>
            <accessor source="#tri-positions-array" count="4" stride="3"/>
          </technique_common>
        </source>
        <vertices id="tri-vertices">
          <input semantic="POSITION" source="#tri-positions"/>
        </vertices>
        {primitive}
      </mesh>
    </geometry>
  </library_geometries>
  <library_animations>
    <animation id="move">
      <source id="move-input">
        <float_array id="move-input-array" count="2">0 2</float_array>
        <technique_common><accessor source="#move-input-array" count="2" stride="1"/></technique_common>
      </source>
      <source id="move-output">
        <float_array id="move-output-array" count="2">3 4</float_array>
        <technique_common><accessor source="#move-output-array" count="2" stride="1"/></technique_common>
      </source>
      <sampler id="move-sampler">
        <input semantic="INPUT" source="#move-input"/>
        <input semantic="OUTPUT" source="#move-output"/>
      </sampler>
      <channel source="#move-sampler" target="tri-node/location.X"/>
    </animation>
  </library_animations>
  <library_visual_scenes>
    <visual_scene id="Scene">
      <node id="tri-node" name="TriNode">
        <translate>3 0 0</translate>
        <instance_geometry url="#tri-mesh">
          <bind_material>
            <technique_common>
              <instance_material symbol="mat0" target="#Red-material"/>
            </technique_common>
          </bind_material>
        </instance_geometry>
      </node>
    </visual_scene>
  </library_visual_scenes>
  <scene><instance_visual_scene url="#Scene"/></scene>
</COLLADA>
"""

TRIANGLES = """<triangles material="mat0" count="1">
          <input semantic="VERTEX" source="#tri-vertices" offset="0"/>
          <p>0 1 2</p>
        </triangles>"""

POLYLIST = """<polylist material="mat0" count="1">
          <input semantic="VERTEX" source="#tri-vertices" offset="0"/>
          <vcount>4</vcount>
          <p>0 1 3 2</p>
        </polylist>"""


def collada(up_axis="Z_UP", primitive=TRIANGLES) -> bytes:
    return DAE_TEMPLATE.format(up_axis=up_axis, primitive=primitive).encode("utf-8")


def test_z_up_triangle_with_material():
    model = decode_sync(RawAsset(collada(), "tri.dae"))
    np.testing.assert_allclose(model.bounding_box.size, [1, 2, 0], atol=1e-6)
    np.testing.assert_allclose(model.bounding_box.center, [0, 0, 0], atol=1e-6)
    assert model.stats["triangles"] == 1

    material = model.materials[0]
    assert material.name == "Red"
    assert material.transparent
    np.testing.assert_allclose(material.base_color, [1, 0, 0, 0.5])


def test_y_up_is_kept():
    model = decode_sync(RawAsset(collada("Y_UP"), "tri.dae"))
    np.testing.assert_allclose(model.bounding_box.size, [1, 0, 2], atol=1e-6)


def test_missing_up_axis_means_y_up():
    data = collada().replace(b"  <asset><up_axis>Z_UP</up_axis></asset>\n", b"")
    assert b"up_axis" not in data
    model = decode_sync(RawAsset(data, "tri.dae"))
    np.testing.assert_allclose(model.bounding_box.size, [1, 0, 2], atol=1e-6)


def test_polylist_is_triangulated():
    model = decode_sync(RawAsset(collada(primitive=POLYLIST), "quad.dae"))
    assert model.stats["triangles"] == 2
    np.testing.assert_allclose(model.bounding_box.size, [1, 2, 0], atol=1e-6)


def test_animation_channels():
    model = decode_sync(RawAsset(collada(), "tri.dae"))
    assert [clip.name for clip in model.animation_clips] == ["default"]
    clip = model.animation_clips[0]
    assert clip.duration == pytest.approx(2.0)
    channel = clip.channels[0]
    assert (channel.target, channel.path) == ("TriNode", "location.X")
    np.testing.assert_allclose(channel.values.reshape(-1), [3, 4])


def test_node_transform_composes_in_order():
    node = ET.fromstring("<node><translate>1 0 0</translate><rotate>0 0 1 90</rotate>"
                         "<scale>2 2 2</scale></node>")
    transform = node_transform(node)
    point = transform @ [1, 0, 0, 1]
    # scale, then rotate about Z, then translate
    np.testing.assert_allclose(point[:3], [1, 2, 0], atol=1e-9)


def test_node_transform_matrix():
    node = ET.fromstring("<node><matrix>1 0 0 4 0 1 0 5 0 0 1 6 0 0 0 1</matrix></node>")
    np.testing.assert_allclose(node_transform(node)[:3, 3], [4, 5, 6])


def test_wrong_root_element():
    with pytest.raises(DecodeError) as info:
        decode_sync(RawAsset(b"<scene><node/></scene>", "model.dae"))
    assert info.value.kind is ErrorKind.EMPTY_OR_CORRUPT_INPUT
    assert RemediationHint.CHECK_FILE_EXTENSION in info.value.hints


def test_malformed_xml():
    with pytest.raises(DecodeError) as info:
        decode_sync(RawAsset(collada()[:300], "tri.dae"))
    assert info.value.kind is ErrorKind.EMPTY_OR_CORRUPT_INPUT
    assert RemediationHint.REEXPORT_FROM_SOURCE in info.value.hints
    assert info.value.decoder == "dae"


def test_missing_texture_is_recorded():
    data = collada().replace(
        b"<diffuse><color>1 0 0 1</color></diffuse>",
        b"<diffuse><texture texture=\"wood-image\" texcoord=\"UV\"/></diffuse>",
    ).replace(
        b"<library_effects>",
        b"<library_images><image id=\"wood-image\"><init_from>textures/wood.png</init_from></image>"
        b"</library_images><library_effects>",
    )
    model = decode_sync(RawAsset(data, "tri.dae"))
    assert model.diagnostics.missing_resources == {"wood.png"}
    assert model.materials[0].texture_name == "wood.png"
    assert math.isclose(model.materials[0].opacity, 0.5)
