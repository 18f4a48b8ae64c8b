"""Shared graph builders for GEMM fusion tests."""

from gemm_fusion.ir import load_graph_from_dict


def make_op(name, opcode, dtype, shape, operands=(), attrs=None, layout=None):
    op = {
        "name": name,
        "opcode": opcode,
        "dtype": dtype,
        "shape": list(shape),
        "operands": list(operands),
        "attrs": attrs or {},
    }
    if layout is not None:
        op["layout"] = list(layout)
    return op


def param(name, dtype, shape, number, layout=None):
    return make_op(name, "parameter", dtype, shape, attrs={"number": number}, layout=layout)


def dot(name, dtype, shape, lhs, rhs, lhs_contracting=(1,), rhs_contracting=(0,),
        lhs_batch=(), rhs_batch=()):
    return make_op(name, "dot", dtype, shape, [lhs, rhs], attrs={
        "lhs_contracting_dims": list(lhs_contracting),
        "rhs_contracting_dims": list(rhs_contracting),
        "lhs_batch_dims": list(lhs_batch),
        "rhs_batch_dims": list(rhs_batch),
    })


def make_graph(ops, root=None, name="test"):
    data = {"name": name, "ops": ops}
    if root is not None:
        data["root"] = root
    return load_graph_from_dict(data)


def operand_opcodes(graph, op):
    return [graph.op(i).opcode for i in op.operands]


def frag(fragment):
    """(stride, count, slice_start, slice_limit, subfragments) of a Fragment."""
    return (fragment.stride, fragment.count, fragment.slice_start, fragment.slice_limit,
            fragment.subfragments)
