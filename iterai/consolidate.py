"""Fold duplicate tool calls that produced equal results into one call.

Calls are duplicates when they target the same tool of the same plugin and
their results compare equal. Only results that support equality take part,
failed calls never do. Each merge keeps the first call id, joins the
arguments and keeps one result turn.
"""

from typing import Any, Iterable, Sequence

from iterai.errors import HistoryIntegrityError
from iterai.history import (
    Conversation,
    TextTurn,
    ToolCallItem,
    ToolCallTurn,
    ToolResultTurn,
)
from iterai.interface import supports_equality

ARGUMENT_SEPARATOR = ";"


def join_arguments(
    argument_sets: Iterable[dict[str, Any] | None],
) -> dict[str, Any] | None:
    """Union of several argument maps.

    Differing values of one argument are joined into a `;` separated string
    of distinct values; None values are ignored.
    """
    joined: dict[str, Any] | None = None
    for arguments in argument_sets:
        if not arguments:
            continue
        joined = joined if joined is not None else {}
        for key, value in arguments.items():
            if value is None:
                continue
            if key not in joined:
                joined[key] = value
                continue
            existing = str(joined[key])
            if str(value) in existing.split(ARGUMENT_SEPARATOR):
                continue
            joined[key] = f"{existing}{ARGUMENT_SEPARATOR}{value}"
    return joined


def merge_call_items(items: Sequence[ToolCallItem]) -> ToolCallItem:
    first = items[0]
    call_id = next((i.call_id for i in items if i.call_id is not None), None)
    return ToolCallItem(
        call_id=call_id,
        name=first.name,
        plugin_name=first.plugin_name,
        arguments=join_arguments(i.arguments for i in items),
    )


def merge_results(results: Sequence[ToolResultTurn], call_id: str | None) -> ToolResultTurn:
    first = results[0]
    return ToolResultTurn(
        identity=first.identity,
        call_id=call_id,
        name=first.name,
        plugin_name=first.plugin_name,
        result=next((r.result for r in results if r.result is not None), None),
    )


def _duplicate_sets(
    conversation: Conversation, items: Iterable[ToolCallItem]
) -> list[list[str]]:
    by_tool: dict[tuple[str, str | None], set[str]] = {}
    for item in items:
        if item.call_id is not None:
            by_tool.setdefault((item.name, item.plugin_name), set()).add(item.call_id)

    duplicate_sets: list[list[str]] = []
    for call_ids in by_tool.values():
        by_value: dict[tuple[type, Any], list[str]] = {}
        for result in conversation.tool_result_turns():
            if result.call_id not in call_ids or result.error is not None:
                continue
            if not supports_equality(result.result):
                continue
            # 1, 1.0 and True hash alike but are different results
            key = (type(result.result), result.result)
            by_value.setdefault(key, []).append(result.call_id)
        duplicate_sets.extend(ids for ids in by_value.values() if len(ids) > 1)
    return duplicate_sets


def _pop_results(conversation: Conversation, call_ids: list[str]) -> list[ToolResultTurn]:
    results = [t for t in conversation.tool_result_turns() if t.call_id in call_ids]
    for result in reversed(results):
        conversation.remove(result)
    return results


def _check_located(located: Sequence[object], call_ids: list[str]) -> None:
    if len(located) != len(call_ids):
        raise HistoryIntegrityError(
            f"Expected {len(call_ids)} tool calls for ids {call_ids}, found {len(located)}"
        )


def consolidate_parallel_calls(conversation: Conversation) -> list[list[str]]:
    """Merge duplicates issued in parallel within one assistant turn.

    The merged call takes the place of the first duplicate in its turn and the
    merged result is inserted right after that turn. Returns the call ids of
    every merged set, the kept id first.
    """
    merges: list[list[str]] = []
    for turn in reversed(conversation.tool_call_turns()):
        for call_ids in _duplicate_sets(conversation, turn.calls):
            located = [item for item in turn.calls if item.call_id in call_ids]
            _check_located(located, call_ids)

            merged = merge_call_items(located)
            position = turn.calls.index(located[0])
            for item in located:
                turn.calls.remove(item)
            turn.calls.insert(position, merged)

            results = _pop_results(conversation, call_ids)
            conversation.insert(
                conversation.index(turn) + 1, merge_results(results, merged.call_id)
            )
            merges.append([item.call_id for item in located if item.call_id])
    return merges


def consolidate_calls(conversation: Conversation) -> list[list[str]]:
    """Merge duplicates across the whole conversation.

    Duplicates are removed from wherever they were issued and the merged call
    and result are appended at the end as a new assistant turn and result.
    Assistant turns left without calls or text are dropped.
    """
    all_items = [item for turn in conversation.tool_call_turns() for item in turn.calls]
    merges: list[list[str]] = []
    for call_ids in _duplicate_sets(conversation, all_items):
        located = [
            (turn, item)
            for turn in conversation.tool_call_turns()
            for item in turn.calls
            if item.call_id in call_ids
        ]
        _check_located(located, call_ids)

        merged = merge_call_items([item for _, item in located])
        for turn, item in reversed(located):
            turn.calls.remove(item)
            if turn.calls or turn not in conversation:
                continue
            if turn.content:
                index = conversation.index(turn)
                conversation.remove(turn)
                conversation.insert(
                    index, TextTurn(identity=turn.identity, content=turn.content)
                )
            else:
                conversation.remove(turn)

        results = _pop_results(conversation, call_ids)
        conversation.append(ToolCallTurn(calls=[merged]))
        conversation.append(merge_results(results, merged.call_id))
        merges.append([item.call_id for _, item in located if item.call_id])
    return merges
