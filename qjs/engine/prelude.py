"""
Engine Prelude

Script evaluated once into every heap. It owns the handle table and
implements each binding primitive as a small function over integer handles,
so values never cross the host boundary as anything but numbers and strings.

Conventions (mirroring the C API):
- Primitives returning a value return a fresh handle with count 1, or 0 after
  recording the thrown value as pending
- Primitives returning a flag return true/false, or -1 after a throw
- Coercions return the converted number/string, or null after a throw
- A failure that cannot be recorded for lack of memory leaves the reserved
  out-of-memory handle pending; that handle is never counted or released
"""

from qjs.engine.constants import NATIVE_GLOBAL


_SOURCE = r"""
(function () {
  'use strict';
  const global = globalThis;
  const indirectEval = global.eval;
  const hasOwn = Object.prototype.hasOwnProperty;
  const anchorKey = Symbol('anchor');
  const arenaKey = Symbol('arena');
  const slots = new Map();
  let nextHandle = 1;
  let pending = 0;

  const builtinProtos = new Map([
    [1, Object.prototype], [2, Array.prototype], [3, Error.prototype],
    [4, Number.prototype], [5, String.prototype], [6, Boolean.prototype],
    [7, Symbol.prototype], [10, Date.prototype], [12, Function.prototype],
    [13, Function.prototype], [18, RegExp.prototype],
  ]);

  function put(value) {
    const handle = nextHandle++;
    slots.set(handle, [value, 1]);
    return handle;
  }

  // Allocated before any script runs and never released; it stands in for
  // a thrown value that could not be recorded for lack of memory.
  const oomHandle = put(new InternalError('out of memory'));

  function get(handle) {
    const slot = slots.get(handle);
    if (slot === undefined) {
      throw new ReferenceError('invalid value handle ' + handle);
    }
    return slot[0];
  }

  function free(handle) {
    if (handle === oomHandle) {
      return;
    }
    const slot = slots.get(handle);
    if (slot !== undefined && --slot[1] <= 0) {
      slots.delete(handle);
    }
  }

  function take(handle) {
    const value = get(handle);
    free(handle);
    return value;
  }

  function fail(error) {
    if (pending) {
      free(pending);
    }
    try {
      pending = put(error);
    } catch (ignored) {
      pending = oomHandle;
    }
    return 0;
  }

  function isObject(value) {
    return typeof value === 'function' || (typeof value === 'object' && value !== null);
  }

  function adoptNative() {
    const native = global['@NATIVE@'];
    delete global['@NATIVE@'];
    if (typeof native !== 'function') {
      throw new TypeError('no native callable to adopt');
    }
    return native;
  }

  const helpers = {
    free,

    dup(handle) {
      const slot = slots.get(handle);
      if (slot !== undefined && handle !== oomHandle) {
        slot[1]++;
      }
      return handle;
    },

    refcount(handle) {
      const slot = slots.get(handle);
      return slot === undefined ? 0 : slot[1];
    },

    handleCount() {
      return slots.size;
    },

    outOfMemoryHandle() {
      return oomHandle;
    },

    takePending() {
      const handle = pending;
      pending = 0;
      return handle;
    },

    newNull() { return put(null); },
    newUndefined() { return put(undefined); },
    newBool(value) { return put(!!value); },
    newNumber(value) { return put(+value); },
    newString(value) { return put(String(value)); },
    newError(message) { return put(new Error(message)); },
    newObject() { return put({}); },
    globalObject() { return put(global); },

    classProto(classId) {
      return put(builtinProtos.has(classId) ? builtinProtos.get(classId) : null);
    },

    newObjectProto(protoHandle) {
      try {
        return put(Object.create(get(protoHandle)));
      } catch (e) {
        return fail(e);
      }
    },

    newArray(protoHandle) {
      try {
        const array = [];
        if (protoHandle) {
          Object.setPrototypeOf(array, get(protoHandle));
        }
        return put(array);
      } catch (e) {
        return fail(e);
      }
    },

    newClassObject(protoHandle, index) {
      try {
        const native = adoptNative();
        const object = Object.create(protoHandle ? get(protoHandle) : null);
        Object.defineProperty(object, anchorKey, { value: native });
        Object.defineProperty(object, arenaKey, { value: index });
        return put(object);
      } catch (e) {
        return fail(e);
      }
    },

    arenaIndex(handle) {
      const value = get(handle);
      if (!isObject(value) || !hasOwn.call(value, arenaKey)) {
        return -1;
      }
      return value[arenaKey];
    },

    newFunction(name, length, magic, ...dataHandles) {
      try {
        const native = adoptNative();
        const data = dataHandles.map(get);
        const fn = {
          [name](...args) {
            while (args.length < length) {
              args.push(undefined);
            }
            const handles = [put(this)];
            for (const arg of args) {
              handles.push(put(arg));
            }
            for (const item of data) {
              handles.push(put(item));
            }
            let result;
            try {
              result = native(magic, args.length, ...handles);
            } finally {
              handles.forEach(free);
            }
            if (result > 0) {
              return take(result);
            }
            if (result < 0) {
              throw take(-result);
            }
            throw new Error('native function ' + name + ' failed');
          },
        }[name];
        Object.defineProperty(fn, 'length', { value: length });
        return put(fn);
      } catch (e) {
        return fail(e);
      }
    },

    evaluate(source, filename, strict) {
      try {
        return put(indirectEval(strict ? '"use strict";' + source : source));
      } catch (e) {
        if (e instanceof SyntaxError) {
          try {
            Object.defineProperty(e, 'fileName', {
              value: filename, writable: true, configurable: true,
            });
          } catch (ignored) {
            // frozen error objects keep the engine's own file name
          }
        }
        return fail(e);
      }
    },

    getProperty(handle, name) {
      try {
        return put(get(handle)[name]);
      } catch (e) {
        return fail(e);
      }
    },

    getIndex(handle, index) {
      try {
        return put(get(handle)[index]);
      } catch (e) {
        return fail(e);
      }
    },

    setProperty(handle, name, valueHandle) {
      try {
        get(handle)[name] = get(valueHandle);
        return true;
      } catch (e) {
        fail(e);
        return -1;
      }
    },

    setIndex(handle, index, valueHandle) {
      try {
        get(handle)[index] = get(valueHandle);
        return true;
      } catch (e) {
        fail(e);
        return -1;
      }
    },

    hasProperty(handle, name) {
      try {
        const object = get(handle);
        return isObject(object) ? Reflect.has(object, name) : false;
      } catch (e) {
        fail(e);
        return -1;
      }
    },

    deleteProperty(handle, name) {
      try {
        const object = get(handle);
        if (object === undefined || object === null) {
          throw new TypeError('cannot delete property of ' + object);
        }
        return Reflect.deleteProperty(Object(object), name);
      } catch (e) {
        fail(e);
        return -1;
      }
    },

    isExtensible(handle) {
      try {
        return Object.isExtensible(get(handle));
      } catch (e) {
        fail(e);
        return -1;
      }
    },

    preventExtensions(handle) {
      try {
        const object = get(handle);
        return isObject(object) ? Reflect.preventExtensions(object) : false;
      } catch (e) {
        fail(e);
        return -1;
      }
    },

    setPrototype(handle, protoHandle) {
      try {
        const object = get(handle);
        if (!isObject(object)) {
          throw new TypeError('not an object');
        }
        return Reflect.setPrototypeOf(object, get(protoHandle));
      } catch (e) {
        fail(e);
        return -1;
      }
    },

    getPrototype(handle) {
      try {
        return put(Object.getPrototypeOf(get(handle)));
      } catch (e) {
        return fail(e);
      }
    },

    call(fnHandle, thisHandle, ...argHandles) {
      try {
        return put(Reflect.apply(get(fnHandle), get(thisHandle), argHandles.map(get)));
      } catch (e) {
        return fail(e);
      }
    },

    invoke(handle, name, ...argHandles) {
      try {
        const object = get(handle);
        return put(object[name](...argHandles.map(get)));
      } catch (e) {
        return fail(e);
      }
    },

    toBool(handle) {
      return !!get(handle);
    },

    toInt32(handle) {
      try {
        return (+get(handle)) | 0;
      } catch (e) {
        fail(e);
        return null;
      }
    },

    toUint32(handle) {
      try {
        return (+get(handle)) >>> 0;
      } catch (e) {
        fail(e);
        return null;
      }
    },

    toNumber(handle) {
      try {
        return +get(handle);
      } catch (e) {
        fail(e);
        return null;
      }
    },

    toIndex(handle) {
      try {
        const value = get(handle);
        if (value === undefined) {
          return 0;
        }
        const number = +value;
        const integer = Number.isNaN(number) ? 0 : Math.trunc(number) + 0;
        if (integer < 0 || integer > Number.MAX_SAFE_INTEGER) {
          throw new RangeError('invalid array index');
        }
        return integer;
      } catch (e) {
        fail(e);
        return null;
      }
    },

    toBigInt64(handle) {
      try {
        return String(BigInt.asIntN(64, get(handle)));
      } catch (e) {
        fail(e);
        return null;
      }
    },

    toInt64Ext(handle) {
      try {
        const value = get(handle);
        return typeof value === 'bigint' ? String(BigInt.asIntN(64, value)) : +value;
      } catch (e) {
        fail(e);
        return null;
      }
    },

    toCString(handle) {
      try {
        return `${get(handle)}`;
      } catch (e) {
        fail(e);
        return null;
      }
    },

    toStringValue(handle) {
      try {
        return put(`${get(handle)}`);
      } catch (e) {
        return fail(e);
      }
    },

    toPropertyKey(handle) {
      try {
        return put(Reflect.ownKeys({ [get(handle)]: 0 })[0]);
      } catch (e) {
        return fail(e);
      }
    },

    typeOf(handle) {
      const value = get(handle);
      return value === null ? 'null' : typeof value;
    },

    isArray(handle) {
      return Array.isArray(get(handle));
    },

    isError(handle) {
      return get(handle) instanceof Error;
    },

    isLive(handle) {
      const slot = slots.get(handle);
      return slot !== undefined && isObject(slot[0]);
    },
  };

  return function lookup(name) {
    if (!hasOwn.call(helpers, name)) {
      throw new ReferenceError('unknown primitive ' + name);
    }
    return helpers[name];
  };
})()
"""

PRELUDE = _SOURCE.replace("@NATIVE@", NATIVE_GLOBAL)
