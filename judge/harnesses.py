"""Harness templates appended to (or compiled beside) the learner's code.

Every harness reads ``tests.json`` from its working directory, calls the
learner's function once per test case in order, and prints the results as a
single JSON array on its own line. Names are prefixed with ``judge`` so they
do not collide with learner code. ``__JUDGE_FUNCTION__`` is replaced with the
validated function name.
"""

FUNCTION_PLACEHOLDER = '__JUDGE_FUNCTION__'

TS_COMPILER_OPTIONS = (
    '{"module":"CommonJS","moduleResolution":"node","target":"ES2020","strict":false,'
    '"esModuleInterop":true,"allowSyntheticDefaultImports":true}'
)

# Shared by TypeScript (run with ts-node --transpile-only) and JavaScript.
SCRIPT_HARNESS = r"""

// ---- judge harness ----
function __judgeNormalize(value: any): any {
  const text = JSON.stringify(value);
  return text === undefined ? null : JSON.parse(text);
}

function __judgeDeepEqual(a: any, b: any): boolean {
  if (a === b) return true;
  if (typeof a === 'number' && typeof b === 'number') return Number.isNaN(a) && Number.isNaN(b);
  if (a === null || b === null || typeof a !== 'object' || typeof b !== 'object') return false;
  if (Array.isArray(a) !== Array.isArray(b)) return false;
  if (Array.isArray(a)) {
    if (a.length !== b.length) return false;
    for (let i = 0; i < a.length; i++) {
      if (!__judgeDeepEqual(a[i], b[i])) return false;
    }
    return true;
  }
  const keysA = Object.keys(a);
  const keysB = Object.keys(b);
  if (keysA.length !== keysB.length) return false;
  for (const key of keysA) {
    if (!Object.prototype.hasOwnProperty.call(b, key)) return false;
    if (!__judgeDeepEqual(a[key], b[key])) return false;
  }
  return true;
}

function __judgeElapsedMs(start: any): number {
  const diff = process.hrtime(start);
  return diff[0] * 1e3 + diff[1] / 1e6;
}

async function __judgeRun() {
  const cases = JSON.parse(require('fs').readFileSync(require('path').join(__dirname, 'tests.json'), 'utf8'));
  const results: any[] = [];
  for (const testCase of cases) {
    const entry: any = { passed: false, expected: testCase.expected, description: testCase.description };
    const start = process.hrtime();
    try {
      const input = testCase.input;
      const args = input === null || input === undefined ? [] : Array.isArray(input) ? input : [input];
      let value = (__JUDGE_FUNCTION__ as any)(...args);
      if (value && typeof value.then === 'function') value = await value;
      entry.actual = __judgeNormalize(value);
      entry.passed = __judgeDeepEqual(entry.actual, testCase.expected);
    } catch (err) {
      entry.error = err instanceof Error ? err.message : String(err);
    }
    entry.executionTimeMs = __judgeElapsedMs(start);
    results.push(entry);
  }
  process.stdout.write('\n' + JSON.stringify(results) + '\n');
}

__judgeRun().catch((err) => {
  process.stderr.write(String(err && err.stack ? err.stack : err) + '\n');
  process.exit(1);
});
"""

# Plain JavaScript cannot carry the type annotations above.
JS_HARNESS = (
    SCRIPT_HARNESS
    .replace('(value: any): any', '(value)')
    .replace('(a: any, b: any): boolean', '(a, b)')
    .replace('(start: any): number', '(start)')
    .replace('const results: any[] = []', 'const results = []')
    .replace('const entry: any = ', 'const entry = ')
    .replace('(__JUDGE_FUNCTION__ as any)', '__JUDGE_FUNCTION__')
)

GO_HARNESS = r"""package main

import (
	"bytes"
	"encoding/json"
	"fmt"
	"os"
	"reflect"
	"time"
)

type judgeCase struct {
	Input       json.RawMessage `json:"input"`
	Expected    json.RawMessage `json:"expected"`
	Description string          `json:"description"`
}

type judgeResult struct {
	Passed          bool        `json:"passed"`
	Expected        interface{} `json:"expected"`
	Actual          interface{} `json:"actual,omitempty"`
	Error           string      `json:"error,omitempty"`
	Description     string      `json:"description"`
	ExecutionTimeMs float64     `json:"executionTimeMs"`
}

var judgeErrorType = reflect.TypeOf((*error)(nil)).Elem()

func judgeNormalize(v interface{}) (interface{}, error) {
	data, err := json.Marshal(v)
	if err != nil {
		return nil, err
	}
	var out interface{}
	if err := json.Unmarshal(data, &out); err != nil {
		return nil, err
	}
	return out, nil
}

func judgeArgs(fnType reflect.Type, raw json.RawMessage) ([]reflect.Value, error) {
	trimmed := bytes.TrimSpace(raw)
	var items []json.RawMessage
	switch {
	case len(trimmed) == 0 || bytes.Equal(trimmed, []byte("null")):
		items = nil
	case trimmed[0] == '[':
		if err := json.Unmarshal(trimmed, &items); err != nil {
			return nil, err
		}
		if fnType.NumIn() == 1 && len(items) != 1 {
			items = []json.RawMessage{trimmed}
		}
	default:
		items = []json.RawMessage{trimmed}
	}
	if len(items) != fnType.NumIn() {
		return nil, fmt.Errorf("function takes %d argument(s), test case provides %d", fnType.NumIn(), len(items))
	}
	args := make([]reflect.Value, len(items))
	for i, item := range items {
		ptr := reflect.New(fnType.In(i))
		if err := json.Unmarshal(item, ptr.Interface()); err != nil {
			return nil, fmt.Errorf("argument %d: %v", i+1, err)
		}
		args[i] = ptr.Elem()
	}
	return args, nil
}

func judgeRun(fn reflect.Value, tc judgeCase) (res judgeResult) {
	res.Description = tc.Description
	if expected, err := judgeNormalize(tc.Expected); err == nil {
		res.Expected = expected
	}
	start := time.Now()
	defer func() {
		if r := recover(); r != nil {
			res.Passed = false
			res.Error = fmt.Sprintf("panic: %v", r)
		}
		res.ExecutionTimeMs = float64(time.Since(start).Microseconds()) / 1000.0
	}()

	fnType := fn.Type()
	args, err := judgeArgs(fnType, tc.Input)
	if err != nil {
		res.Error = err.Error()
		return
	}
	var out []reflect.Value
	if fnType.IsVariadic() {
		out = fn.CallSlice(args)
	} else {
		out = fn.Call(args)
	}
	if n := len(out); n > 0 && fnType.Out(n-1).Implements(judgeErrorType) {
		if !out[n-1].IsNil() {
			res.Error = out[n-1].Interface().(error).Error()
			return
		}
		out = out[:n-1]
	}
	if len(out) == 0 {
		res.Error = "function returned no value"
		return
	}
	actual, err := judgeNormalize(out[0].Interface())
	if err != nil {
		res.Error = fmt.Sprintf("result is not JSON serializable: %v", err)
		return
	}
	res.Actual = actual
	res.Passed = reflect.DeepEqual(actual, res.Expected)
	return
}

func main() {
	data, err := os.ReadFile("tests.json")
	if err != nil {
		fmt.Fprintln(os.Stderr, "judge: cannot read test cases:", err)
		os.Exit(2)
	}
	var cases []judgeCase
	if err := json.Unmarshal(data, &cases); err != nil {
		fmt.Fprintln(os.Stderr, "judge: cannot parse test cases:", err)
		os.Exit(2)
	}
	fn := reflect.ValueOf(__JUDGE_FUNCTION__)
	results := make([]judgeResult, 0, len(cases))
	for _, tc := range cases {
		results = append(results, judgeRun(fn, tc))
	}
	out, err := json.Marshal(results)
	if err != nil {
		fmt.Fprintln(os.Stderr, "judge: cannot encode results:", err)
		os.Exit(2)
	}
	fmt.Print("\n")
	fmt.Println(string(out))
}
"""

GO_MOD = """module solution

go 1.18
"""

PHP_HARNESS = r"""<?php
require __DIR__ . '/solution.php';

function judge_is_list($value) {
    if (!is_array($value)) {
        return false;
    }
    $i = 0;
    foreach ($value as $key => $_) {
        if ($key !== $i++) {
            return false;
        }
    }
    return true;
}

function judge_normalize($value) {
    return json_decode(json_encode($value, JSON_PARTIAL_OUTPUT_ON_ERROR), true);
}

function judge_equal($a, $b) {
    if ((is_int($a) || is_float($a)) && (is_int($b) || is_float($b))) {
        return $a == $b;
    }
    if (is_array($a) && is_array($b)) {
        if (count($a) !== count($b)) {
            return false;
        }
        foreach ($a as $key => $value) {
            if (!array_key_exists($key, $b) || !judge_equal($value, $b[$key])) {
                return false;
            }
        }
        return true;
    }
    return $a === $b;
}

$judgeFunction = '__JUDGE_FUNCTION__';
$judgeCases = json_decode(file_get_contents(__DIR__ . '/tests.json'), true);
$judgeResults = [];

foreach ($judgeCases as $judgeCase) {
    $entry = [
        'passed' => false,
        'expected' => $judgeCase['expected'],
        'description' => $judgeCase['description'],
    ];
    $start = hrtime(true);
    try {
        $input = $judgeCase['input'];
        if ($input === null) {
            $args = [];
        } elseif (judge_is_list($input)) {
            $args = $input;
        } else {
            $args = [$input];
        }
        $entry['actual'] = judge_normalize(call_user_func_array($judgeFunction, $args));
        $entry['passed'] = judge_equal($entry['actual'], $judgeCase['expected']);
    } catch (Throwable $e) {
        $entry['error'] = $e->getMessage();
    }
    $entry['executionTimeMs'] = (hrtime(true) - $start) / 1e6;
    $judgeResults[] = $entry;
}

echo "\n" . json_encode($judgeResults, JSON_PARTIAL_OUTPUT_ON_ERROR) . "\n";
"""
